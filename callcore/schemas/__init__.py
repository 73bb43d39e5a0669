from callcore.schemas.session import (
    CallSession,
    CallState,
    ConferenceSession,
    ConferenceState,
    MediaKind,
)
from callcore.schemas.signaling import (
    ConferenceInfo,
    IceCandidatePayload,
    IceConfig,
    IceServer,
    SessionDescriptionPayload,
    SignalingMessage,
    SignalingMessageType,
)

__all__ = [
    "CallSession",
    "CallState",
    "ConferenceInfo",
    "ConferenceSession",
    "ConferenceState",
    "IceCandidatePayload",
    "IceConfig",
    "IceServer",
    "MediaKind",
    "SessionDescriptionPayload",
    "SignalingMessage",
    "SignalingMessageType",
]
