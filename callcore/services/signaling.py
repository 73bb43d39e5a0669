"""시그널링 코덱 및 송신기

와이어 포맷: {"type", "sender", "roomId", "content", "extra"} JSON 객체.
SDP/ICE 본문은 PayloadFilter(암호화 전략)를 거쳐 `extra.sig_enc`로 전송될 수 있다.
"""

import base64
import binascii
import json
import logging
from typing import Any, Protocol

from pydantic import ValidationError

from callcore.core.exceptions import NegotiationError, SignalingUnavailable
from callcore.core.telemetry import get_call_metrics
from callcore.core.webrtc_config import SENSITIVE_FIELDS
from callcore.schemas.signaling import (
    FILTERED_MESSAGE_TYPES,
    SignalingMessage,
    SignalingMessageType,
)

logger = logging.getLogger(__name__)

ENCRYPTED_FIELD = "sig_enc"


class PayloadFilter(Protocol):
    """SDP/ICE 본문 인코딩 전략 (예: 종단간 암호화)"""

    def encode(self, data: bytes) -> bytes: ...

    def decode(self, data: bytes) -> bytes: ...


class PassthroughFilter:
    """아무것도 하지 않는 기본 필터"""

    def encode(self, data: bytes) -> bytes:
        return data

    def decode(self, data: bytes) -> bytes:
        return data


class SignalingCodec:
    """시그널링 메시지 직렬화/역직렬화"""

    def __init__(self, payload_filter: PayloadFilter | None = None):
        self.payload_filter = payload_filter or PassthroughFilter()

    @property
    def filtering(self) -> bool:
        return not isinstance(self.payload_filter, PassthroughFilter)

    def encode(self, message: SignalingMessage) -> str:
        """메시지를 와이어 JSON 문자열로 변환

        필터가 설정되어 있으면 민감 필드를 `sig_enc`로 옮긴다.
        """
        wire = message.to_wire()
        if self.filtering and message.type in FILTERED_MESSAGE_TYPES:
            wire["extra"] = self._seal(wire.get("extra", {}))
        return json.dumps(wire, ensure_ascii=False)

    def decode(self, raw: str | bytes) -> SignalingMessage:
        """와이어 프레임을 SignalingMessage로 변환

        Raises:
            NegotiationError: JSON/봉투 형식 오류 또는 필터 복호화 실패
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise NegotiationError(f"Malformed signaling frame: {e}") from e

        if not isinstance(data, dict):
            raise NegotiationError("Signaling frame must be a JSON object")

        extra = data.get("extra")
        if isinstance(extra, dict) and ENCRYPTED_FIELD in extra:
            data["extra"] = self._open(extra)

        try:
            return SignalingMessage.model_validate(data)
        except ValidationError as e:
            raise NegotiationError(f"Invalid signaling envelope: {e}") from e

    def _seal(self, extra: dict[str, Any]) -> dict[str, Any]:
        sensitive = {k: extra[k] for k in SENSITIVE_FIELDS if k in extra}
        if not sensitive:
            return extra

        sealed = {k: v for k, v in extra.items() if k not in sensitive}
        plain = json.dumps(sensitive, ensure_ascii=False).encode("utf-8")
        sealed[ENCRYPTED_FIELD] = base64.b64encode(self.payload_filter.encode(plain)).decode("ascii")
        return sealed

    def _open(self, extra: dict[str, Any]) -> dict[str, Any]:
        try:
            cipher = base64.b64decode(extra[ENCRYPTED_FIELD], validate=True)
            sensitive = json.loads(self.payload_filter.decode(cipher))
        except (binascii.Error, ValueError, TypeError) as e:
            raise NegotiationError(f"Failed to decode filtered payload: {e}") from e

        if not isinstance(sensitive, dict):
            raise NegotiationError("Filtered payload must be a JSON object")

        opened = {k: v for k, v in extra.items() if k != ENCRYPTED_FIELD}
        opened.update(sensitive)
        return opened


class SignalingChannel(Protocol):
    """외부 전송 채널 (재연결 WebSocket 등)"""

    @property
    def is_open(self) -> bool: ...

    async def send(self, text: str) -> None: ...


class SignalingSender:
    """시그널링 메시지 송신기

    채널이 닫혀 있거나 전송이 실패하면 메시지를 버린다. 재시도/큐잉하지 않는다.
    """

    def __init__(self, channel: SignalingChannel, codec: SignalingCodec, sender_id: str):
        """
        Args:
            channel: 외부 전송 채널
            codec: 시그널링 코덱
            sender_id: 자신의 식별자
        """
        self.channel = channel
        self.codec = codec
        self.sender_id = sender_id

    async def send(
        self,
        message_type: SignalingMessageType,
        target: str | None = None,
        room_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """메시지 전송

        Args:
            message_type: 메시지 타입
            target: 수신자 식별자 (브로드캐스트면 None)
            room_id: 룸 식별자
            extra: 타입별 페이로드 (camelCase 키)

        Returns:
            전송 성공 여부
        """
        payload = dict(extra or {})
        if target is not None:
            payload["target"] = target

        message = SignalingMessage(
            type=message_type.value,
            sender=self.sender_id,
            room_id=room_id,
            extra=payload,
        )

        try:
            if not self.channel.is_open:
                raise SignalingUnavailable("Signaling channel is not open")
            await self.channel.send(self.codec.encode(message))
        except Exception as e:
            # 전송 계층마다 닫힌 소켓 예외가 다르므로 모두 드롭으로 취급
            logger.warning(f"[SignalingSender] Dropped {message_type.value} to {target}: {e}")
            metrics = get_call_metrics()
            if metrics:
                metrics.signaling_dropped_total.add(1, {"type": message_type.value})
            return False

        logger.debug(f"[SignalingSender] Sent {message_type.value} to {target}")
        return True
