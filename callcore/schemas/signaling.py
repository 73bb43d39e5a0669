"""시그널링 관련 Pydantic 스키마"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SignalingMessageType(str, Enum):
    """시그널링 메시지 타입"""
    # 1:1 통화
    CALL_OFFER = "CALL_OFFER"
    CALL_ANSWER = "CALL_ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"
    CALL_REJECT = "CALL_REJECT"
    CALL_END = "CALL_END"
    CALL_BUSY = "CALL_BUSY"
    # 컨퍼런스 (풀메시)
    CONF_JOIN = "CONF_JOIN"
    CONF_PEERS = "CONF_PEERS"
    CONF_OFFER = "CONF_OFFER"
    CONF_ANSWER = "CONF_ANSWER"
    CONF_ICE = "CONF_ICE"
    CONF_LEAVE = "CONF_LEAVE"


# 페이로드 필터(암호화) 적용 대상 메시지
FILTERED_MESSAGE_TYPES = frozenset(
    {
        SignalingMessageType.CALL_OFFER,
        SignalingMessageType.CALL_ANSWER,
        SignalingMessageType.ICE_CANDIDATE,
        SignalingMessageType.CONF_OFFER,
        SignalingMessageType.CONF_ANSWER,
        SignalingMessageType.CONF_ICE,
    }
)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class SignalingMessage(BaseModel):
    """시그널링 메시지 봉투

    `extra`에 target, confId, sdp, candidate 등 타입별 페이로드가 담긴다.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: str
    sender: str | None = None
    room_id: str | None = Field(default=None, alias="roomId")
    content: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def target(self) -> str | None:
        return self.extra.get("target")

    @property
    def conference_id(self) -> str | None:
        return self.extra.get("confId")

    @property
    def call_type(self) -> str | None:
        return self.extra.get("callType")

    @property
    def sdp(self) -> str | None:
        return self.extra.get("sdp")

    @property
    def candidate(self) -> str | dict | None:
        return self.extra.get("candidate")

    @property
    def reason(self) -> str | None:
        return self.extra.get("reason")

    @property
    def renegotiate(self) -> bool:
        return _as_bool(self.extra.get("renegotiate", False))

    @property
    def key_rotation(self) -> bool:
        return _as_bool(self.extra.get("keyRotation", False))

    @property
    def media_key(self) -> str | None:
        return self.extra.get("mediaKey")

    @property
    def peers(self) -> list[str]:
        """CONF_PEERS 명단 (콤마 구분 문자열 또는 리스트)"""
        raw = self.extra.get("peers") or ""
        if isinstance(raw, str):
            return [p.strip() for p in raw.split(",") if p.strip()]
        if isinstance(raw, list):
            return [str(p) for p in raw if p]
        return []

    def to_wire(self) -> dict[str, Any]:
        """전송용 딕셔너리 (camelCase, None 제외)"""
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionDescriptionPayload(BaseModel):
    """SDP 페이로드 (RTCSessionDescriptionInit)"""
    type: str
    sdp: str


class IceCandidatePayload(BaseModel):
    """ICE Candidate 페이로드 (RTCIceCandidateInit)"""
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class IceServer(BaseModel):
    """ICE 서버 설정"""
    urls: str | list[str]
    username: str | None = None
    credential: str | None = None

    @property
    def url_list(self) -> list[str]:
        return [self.urls] if isinstance(self.urls, str) else list(self.urls)


class IceConfig(BaseModel):
    """ICE 설정 응답"""
    model_config = ConfigDict(populate_by_name=True)

    ice_servers: list[IceServer] = Field(default_factory=list, alias="iceServers")


class ConferenceInfo(BaseModel):
    """컨퍼런스 정보 응답"""
    model_config = ConfigDict(populate_by_name=True)

    conf_id: str = Field(alias="confId")
    room_id: str | None = Field(default=None, alias="roomId")
    creator: str | None = None
    participants: list[str] = Field(default_factory=list)
    count: int = 0
    max_participants: int = Field(default=10, alias="maxParticipants")
    created_at: int | None = Field(default=None, alias="createdAt")
