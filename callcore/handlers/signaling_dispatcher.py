"""수신 시그널링 메시지 디스패처 - Strategy Pattern 구현"""

import logging
from typing import TYPE_CHECKING, Protocol

from callcore.core.exceptions import NegotiationError
from callcore.core.telemetry import get_tracer
from callcore.schemas.signaling import SignalingMessage, SignalingMessageType
from callcore.services.signaling import SignalingCodec

if TYPE_CHECKING:
    from callcore.services.call_session_manager import CallSessionManager
    from callcore.services.conference_session_manager import ConferenceSessionManager

logger = logging.getLogger(__name__)


class MessageHandler(Protocol):
    """메시지 핸들러 프로토콜"""

    async def handle(self, dispatcher: "SignalingDispatcher", message: SignalingMessage) -> bool:
        """메시지 처리

        Args:
            dispatcher: 매니저를 보유한 디스패처
            message: 디코딩된 메시지

        Returns:
            처리한 매니저가 있었는지 여부
        """
        ...


class CallMessageHandler:
    """1:1 통화 메시지 → CallSessionManager"""

    def __init__(self, method: str):
        """
        Args:
            method: CallSessionManager 핸들러 메서드 이름
        """
        self.method = method

    async def handle(self, dispatcher: "SignalingDispatcher", message: SignalingMessage) -> bool:
        manager = dispatcher.call_manager
        if manager is None:
            logger.debug(f"{message.type} received but no call manager registered")
            return False
        await getattr(manager, self.method)(message)
        return True


class ConferenceMessageHandler:
    """컨퍼런스 메시지 → ConferenceSessionManager"""

    def __init__(self, method: str):
        self.method = method

    async def handle(self, dispatcher: "SignalingDispatcher", message: SignalingMessage) -> bool:
        manager = dispatcher.conference_manager
        if manager is None:
            logger.debug(f"{message.type} received but no conference manager registered")
            return False
        await getattr(manager, self.method)(message)
        return True


# 핸들러 레지스트리
HANDLERS: dict[str, MessageHandler] = {
    SignalingMessageType.CALL_OFFER: CallMessageHandler("handle_offer"),
    SignalingMessageType.CALL_ANSWER: CallMessageHandler("handle_answer"),
    SignalingMessageType.ICE_CANDIDATE: CallMessageHandler("handle_ice_candidate"),
    SignalingMessageType.CALL_REJECT: CallMessageHandler("handle_reject"),
    SignalingMessageType.CALL_END: CallMessageHandler("handle_end"),
    SignalingMessageType.CALL_BUSY: CallMessageHandler("handle_busy"),
    SignalingMessageType.CONF_JOIN: ConferenceMessageHandler("handle_join"),
    SignalingMessageType.CONF_PEERS: ConferenceMessageHandler("handle_peers"),
    SignalingMessageType.CONF_OFFER: ConferenceMessageHandler("handle_offer"),
    SignalingMessageType.CONF_ANSWER: ConferenceMessageHandler("handle_answer"),
    SignalingMessageType.CONF_ICE: ConferenceMessageHandler("handle_ice"),
    SignalingMessageType.CONF_LEAVE: ConferenceMessageHandler("handle_leave"),
}


class SignalingDispatcher:
    """전송 채널에서 받은 프레임을 디코딩해 매니저 핸들러로 라우팅"""

    def __init__(
        self,
        codec: SignalingCodec,
        call_manager: "CallSessionManager | None" = None,
        conference_manager: "ConferenceSessionManager | None" = None,
    ):
        self.codec = codec
        self.call_manager = call_manager
        self.conference_manager = conference_manager

    async def dispatch(self, raw: str | bytes) -> bool:
        """수신 프레임 처리

        Args:
            raw: 와이어 프레임

        Returns:
            핸들러가 실행되었는지 여부 (디코딩 실패/알 수 없는 타입이면 False)
        """
        try:
            message = self.codec.decode(raw)
        except NegotiationError as e:
            logger.warning(f"Dropping undecodable signaling frame: {e}")
            return False

        return await self.dispatch_message(message)

    async def dispatch_message(self, message: SignalingMessage) -> bool:
        """디코딩된 메시지를 타입에 따라 적절한 핸들러로 디스패치"""
        handler = HANDLERS.get(message.type)
        if handler is None:
            logger.warning(f"Unknown message type: {message.type}")
            return False

        logger.debug(f"Dispatching {message.type} from {message.sender}")
        with get_tracer().start_as_current_span(f"signaling.{message.type}") as span:
            span.set_attribute("signaling.sender", message.sender or "")
            return await handler.handle(self, message)
