"""ICE candidate 파싱 유틸리티"""

import json
import logging

from aiortc import RTCIceCandidate
from pydantic import ValidationError

from callcore.core.exceptions import NegotiationError
from callcore.schemas.signaling import IceCandidatePayload

logger = logging.getLogger(__name__)


class ICECandidateParser:
    """시그널링으로 받은 ICE candidate를 aiortc RTCIceCandidate로 파싱하는 유틸리티"""

    @staticmethod
    def load(raw: str | dict) -> IceCandidatePayload | None:
        """와이어 페이로드(JSON 문자열 또는 딕셔너리)를 검증

        Args:
            raw: {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}

        Returns:
            IceCandidatePayload, 빈 candidate(end-of-candidates)면 None

        Raises:
            NegotiationError: JSON 또는 필드 형식이 잘못된 경우
        """
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise NegotiationError(f"Malformed candidate JSON: {e}") from e

        if not isinstance(raw, dict):
            raise NegotiationError(f"Candidate must be an object, got {type(raw).__name__}")

        try:
            payload = IceCandidatePayload.model_validate(raw)
        except ValidationError as e:
            raise NegotiationError(f"Invalid candidate payload: {e}") from e

        if not payload.candidate:
            return None
        return payload

    @staticmethod
    def parse(payload: IceCandidatePayload) -> RTCIceCandidate:
        """candidate 문자열을 aiortc RTCIceCandidate로 파싱

        Args:
            payload: 검증된 candidate 페이로드

        Returns:
            RTCIceCandidate

        Raises:
            NegotiationError: candidate 문자열 형식이 잘못된 경우
        """
        candidate_str = payload.candidate

        # "candidate:" 접두사 제거
        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str[10:]

        # 기본 필드 파싱: foundation component protocol priority ip port typ type
        parts = candidate_str.split()
        if len(parts) < 8 or parts[6] != "typ":
            raise NegotiationError(f"Invalid candidate format: {candidate_str[:50]}")

        try:
            foundation = parts[0]
            component = int(parts[1])
            protocol = parts[2].lower()
            priority = int(parts[3])
            ip = parts[4]
            port = int(parts[5])
            candidate_type = parts[7]

            # 선택적 필드 파싱 (raddr, rport, tcptype)
            related_address = None
            related_port = None
            tcp_type = None

            i = 8
            while i < len(parts) - 1:
                if parts[i] == "raddr":
                    related_address = parts[i + 1]
                    i += 2
                elif parts[i] == "rport":
                    related_port = int(parts[i + 1])
                    i += 2
                elif parts[i] == "tcptype":
                    tcp_type = parts[i + 1]
                    i += 2
                else:
                    i += 1
        except (ValueError, IndexError) as e:
            raise NegotiationError(f"Failed to parse candidate: {e}") from e

        return RTCIceCandidate(
            component=component,
            foundation=foundation,
            ip=ip,
            port=port,
            priority=priority,
            protocol=protocol,
            type=candidate_type,
            relatedAddress=related_address,
            relatedPort=related_port,
            sdpMid=payload.sdp_mid,
            sdpMLineIndex=payload.sdp_mline_index,
            tcpType=tcp_type,
        )
