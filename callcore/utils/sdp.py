"""SDP 직렬화 및 비디오 송출 상한 유틸리티"""

import json
import logging

from aiortc import RTCSessionDescription
from pydantic import ValidationError

from callcore.core.exceptions import NegotiationError
from callcore.schemas.signaling import SessionDescriptionPayload

logger = logging.getLogger(__name__)

VALID_SDP_TYPES = ("offer", "answer", "pranswer", "rollback")


def description_to_json(description: RTCSessionDescription) -> str:
    """RTCSessionDescription을 와이어용 JSON 문자열로 변환"""
    payload = SessionDescriptionPayload(type=description.type, sdp=description.sdp)
    return payload.model_dump_json()


def description_from_json(raw: str | dict, expected_type: str | None = None) -> RTCSessionDescription:
    """와이어 SDP 페이로드를 RTCSessionDescription으로 변환

    Args:
        raw: JSON 문자열 또는 {"type": "...", "sdp": "..."} 딕셔너리
        expected_type: 기대하는 타입 ("offer" / "answer"), None이면 검사하지 않음

    Returns:
        RTCSessionDescription

    Raises:
        NegotiationError: 형식 오류 또는 타입 불일치
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NegotiationError(f"Malformed SDP JSON: {e}") from e

    if not isinstance(raw, dict):
        raise NegotiationError(f"SDP must be an object, got {type(raw).__name__}")

    try:
        payload = SessionDescriptionPayload.model_validate(raw)
    except ValidationError as e:
        raise NegotiationError(f"Invalid SDP payload: {e}") from e

    if payload.type not in VALID_SDP_TYPES:
        raise NegotiationError(f"Unknown SDP type: {payload.type}")
    if expected_type and payload.type != expected_type:
        raise NegotiationError(f"Expected SDP type {expected_type}, got {payload.type}")
    if not payload.sdp:
        raise NegotiationError("Empty SDP")

    return RTCSessionDescription(sdp=payload.sdp, type=payload.type)


def apply_bitrate_cap(sdp: str, max_bitrate: int) -> str:
    """비디오 m-section에 대역폭 상한(b=AS, b=TIAS)을 기록

    기존 b= 라인은 교체한다. 오디오 섹션은 건드리지 않는다.

    Args:
        sdp: SDP 문자열
        max_bitrate: 최대 비트레이트 (bps)

    Returns:
        상한이 적용된 SDP 문자열
    """
    if max_bitrate <= 0:
        return sdp

    lines = sdp.splitlines()
    bandwidth = [f"b=AS:{max_bitrate // 1000}", f"b=TIAS:{max_bitrate}"]
    result: list[str] = []
    in_video = False
    inserted = False

    for line in lines:
        if line.startswith("m="):
            if in_video and not inserted:
                result.extend(bandwidth)
            in_video = line.startswith("m=video")
            inserted = False
            result.append(line)
            continue

        if in_video:
            if line.startswith("b="):
                continue
            # RFC 4566 순서: c= 다음, a= 이전
            if not inserted and not line.startswith(("i=", "c=")):
                result.extend(bandwidth)
                inserted = True

        result.append(line)

    if in_video and not inserted:
        result.extend(bandwidth)

    return "\r\n".join(result) + "\r\n"
