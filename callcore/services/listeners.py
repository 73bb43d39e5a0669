"""세션 매니저 → 호스트(UI/오디오) 이벤트 리스너

모든 메서드는 기본 no-op이며, 호스트는 필요한 것만 오버라이드한다.
"""

import logging
from typing import Any

from callcore.schemas.session import CallState, ConferenceState
from callcore.services.media import RemoteMediaStream

logger = logging.getLogger(__name__)


class CallSessionListener:
    """1:1 통화 이벤트"""

    def on_state_changed(self, state: CallState) -> None:
        pass

    def on_incoming_call(self, peer_id: str, call_type: str) -> None:
        pass

    def on_ringtone_start(self, outgoing: bool) -> None:
        pass

    def on_ringtone_stop(self) -> None:
        pass

    def on_duration(self, seconds: int) -> None:
        pass

    def on_remote_stream(self, stream: RemoteMediaStream) -> None:
        pass

    def on_call_ended(self, reason: str) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ConferenceSessionListener:
    """컨퍼런스 이벤트"""

    def on_state_changed(self, state: ConferenceState) -> None:
        pass

    def on_participants_changed(self, participants: list[str]) -> None:
        pass

    def on_peer_stream(self, peer_id: str, stream: RemoteMediaStream) -> None:
        pass

    def on_peer_removed(self, peer_id: str) -> None:
        pass

    def on_duration(self, seconds: int) -> None:
        pass

    def on_call_ended(self, reason: str) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


def notify(listener: Any, event: str, *args) -> None:
    """리스너 호출 (호스트 콜백 예외는 세션 상태에 영향 주지 않음)"""
    handler = getattr(listener, event, None)
    if handler is None:
        return
    try:
        handler(*args)
    except Exception:
        logger.exception(f"[Listener] {event} handler failed")
