"""로깅 설정"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | int | None = None) -> None:
    """호스트 애플리케이션 로깅 초기화

    Args:
        level: 로그 레벨 (None이면 설정값 사용)
    """
    if level is None:
        from callcore.core.config import get_settings

        level = get_settings().log_level

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    # aiortc/aioice는 후보 단위로 DEBUG를 쏟아내므로 한 단계 올림
    logging.getLogger("aioice").setLevel(max(level, logging.INFO))
    logging.getLogger("aiortc").setLevel(max(level, logging.INFO))
