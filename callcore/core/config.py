from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from callcore.core.webrtc_config import MAX_PARTICIPANTS


class Settings(BaseSettings):
    """통화 코어 설정"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CALLCORE_",
        case_sensitive=False,
        extra="ignore",
    )

    # 백엔드 API 설정 (ICE 설정, 컨퍼런스 룸)
    api_base_url: str = "http://localhost:8080"
    api_token: str = ""
    http_timeout: float = 10.0
    ice_config_path: str = "/api/webrtc/ice-config"
    ice_config_ttl: int = 3600  # 1시간
    conference_path: str = "/api/conference"

    # 통화 타이머 (초)
    incoming_call_timeout: float = 30.0
    outgoing_call_timeout: float = 45.0

    # 컨퍼런스
    max_participants: int = MAX_PARTICIPANTS

    # 비디오 송출 상한
    video_max_bitrate: int = 1_500_000  # 1.5 Mbps
    video_max_framerate: int = 30

    # 캡처 장치 (PyAV/FFmpeg 입력)
    audio_device: str = "default"
    audio_format: str = "pulse"
    video_device: str = "/dev/video0"
    video_format: str = "v4l2"
    video_size: str = "1280x720"
    video_framerate: int = 30

    # 로깅
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """설정 싱글톤 반환"""
    return Settings()
