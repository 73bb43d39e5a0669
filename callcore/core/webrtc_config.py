"""WebRTC 관련 설정"""

# ICE 서버 설정 (폴백용 공개 STUN)
# 백엔드 ICE 설정 조회 실패 시에만 사용. TURN이 없으므로 Symmetric NAT 환경에서는 연결 실패 가능
FALLBACK_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
]

# 최대 참여자 수 (본인 포함)
MAX_PARTICIPANTS = 10

# 시스템 발신자 ID (서버가 생성한 메시지)
SYSTEM_SENDER = "system"

# 미디어 제약 조건
AUDIO_CONSTRAINTS = {
    "echoCancellation": True,
    "noiseSuppression": True,
    "autoGainControl": True,
}
VIDEO_CONSTRAINTS = {
    "width": 1280,
    "height": 720,
    "frameRate": 30,
}

# 암호화 필터 대상 필드
SENSITIVE_FIELDS = ("sdp", "candidate", "mediaKey", "callType")


class EndReason:
    """CALL_END / CONF_LEAVE reason 값"""
    HANGUP = "hangup"
    TIMEOUT = "timeout"
    ERROR = "error"
    ICE_FAILED = "ice_failed"
    ROOM_FULL = "full"
    REJECTED = "rejected"
    BUSY = "busy"
    LEFT = "left"


class ConnectionStateName:
    """RTCPeerConnection.connectionState 값"""
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    # 피어 연결 종료로 간주하는 상태
    TERMINAL_STATES = (DISCONNECTED, FAILED, CLOSED)
