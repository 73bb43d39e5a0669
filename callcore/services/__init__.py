"""통화/컨퍼런스 시그널링 서비스 모듈"""

from .call_session_manager import CallSessionManager
from .conference_room_client import ConferenceRoomClient
from .conference_session_manager import ConferenceSessionManager
from .ice_config_provider import IceConfigProvider
from .listeners import CallSessionListener, ConferenceSessionListener
from .media import DeviceMediaAcquisition, LocalMediaStream, RemoteMediaStream, ToggleableTrack
from .media_keys import MediaKeyRing
from .peer_connection import PeerConnectionEntry, PeerConnectionFactory, PeerRegistry
from .scheduler import LoopScheduler
from .signaling import PassthroughFilter, SignalingCodec, SignalingSender

__all__ = [
    "CallSessionListener",
    "CallSessionManager",
    "ConferenceRoomClient",
    "ConferenceSessionListener",
    "ConferenceSessionManager",
    "DeviceMediaAcquisition",
    "IceConfigProvider",
    "LocalMediaStream",
    "LoopScheduler",
    "MediaKeyRing",
    "PassthroughFilter",
    "PeerConnectionEntry",
    "PeerConnectionFactory",
    "PeerRegistry",
    "RemoteMediaStream",
    "SignalingCodec",
    "SignalingSender",
    "ToggleableTrack",
]
