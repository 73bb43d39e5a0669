"""통화 코어 에러 분류"""

from enum import Enum


class MediaErrorKind(str, Enum):
    """미디어 획득 실패 종류 (호스트 UI가 안내 문구를 구분하기 위함)"""
    DENIED = "denied"
    NOT_FOUND = "not-found"
    DEVICE_BUSY = "device-busy"


class CallCoreError(Exception):
    """통화 코어 기본 에러"""

    pass


class MediaError(CallCoreError):
    """카메라/마이크 획득 실패"""

    def __init__(self, kind: MediaErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"[{kind.name}] {self.message}")


class SignalingUnavailable(CallCoreError):
    """시그널링 채널이 열려 있지 않음 (전송 측에서 삼키고 재시도하지 않음)"""

    pass


class NegotiationError(CallCoreError):
    """SDP/ICE 형식 오류 또는 offer/answer 단계 실패"""

    pass


class RoomFull(CallCoreError):
    """컨퍼런스 정원 초과"""

    pass


class RoomServiceError(CallCoreError):
    """컨퍼런스 룸 REST 호출 실패 (정원 초과 외)"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PeerUnreachable(CallCoreError):
    """피어 연결이 failed/disconnected/closed 상태에 도달"""

    def __init__(self, peer_id: str, state: str):
        self.peer_id = peer_id
        self.state = state
        super().__init__(f"Peer {peer_id} unreachable (connection state: {state})")


class InvalidStateError(CallCoreError):
    """현재 세션 상태에서 허용되지 않는 명령"""

    pass


class SessionAborted(CallCoreError):
    """진행 중인 전이가 cleanup()으로 취소됨"""

    pass
