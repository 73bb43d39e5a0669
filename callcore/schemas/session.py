"""통화/컨퍼런스 세션 상태 모델"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from callcore.services.media import LocalMediaStream, RemoteMediaStream
    from callcore.services.peer_connection import PeerRegistry


class CallState(str, Enum):
    """1:1 통화 상태"""
    IDLE = "idle"
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    CONNECTING = "connecting"
    ACTIVE = "active"


class ConferenceState(str, Enum):
    """컨퍼런스 상태"""
    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"


class MediaKind(str, Enum):
    """미디어 종류"""
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: str | None) -> MediaKind:
        """알 수 없는 값은 audio로 취급"""
        return cls.VIDEO if value == cls.VIDEO.value else cls.AUDIO


@dataclass
class CallSession:
    """1:1 통화 세션"""

    state: CallState = CallState.IDLE
    peer_id: str | None = None
    room_id: str | None = None
    media_kind: MediaKind = MediaKind.AUDIO
    local_stream: LocalMediaStream | None = None
    remote_stream: RemoteMediaStream | None = None
    started_at: float | None = None
    muted: bool = False
    video_suspended: bool = False
    # 수락 전까지 보관하는 수신 offer (JSON 문자열)
    pending_offer: str | None = None


@dataclass
class ConferenceSession:
    """풀메시 컨퍼런스 세션"""

    peers: PeerRegistry
    state: ConferenceState = ConferenceState.IDLE
    conference_id: str | None = None
    room_id: str | None = None
    media_kind: MediaKind = MediaKind.AUDIO
    participants: list[str] = field(default_factory=list)
    local_stream: LocalMediaStream | None = None
    started_at: float | None = None
    muted: bool = False
    video_suspended: bool = False
