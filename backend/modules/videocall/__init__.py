"""1:1 화상 진료 통화 모듈.

Identity Manager, Signaling Relay, Call Negotiator로 구성된 통화 수립 흐름.
"""

from .config import CallStatus, ice_config, media_config, signaling_config
from .errors import (
    VideoCallError,
    MediaAccessError,
    CallEstablishmentError,
    IdentityRegistrationError,
    SignalingError,
    SignalingReadError,
    SignalingWriteError,
    RowNotFoundError,
)
from .media import DisplaySurface, LocalMediaStream, MediaStream, get_user_media
from .relay import DataBackend, HttpDataBackend, Role, SignalingRelay
from .transport import BrokerPeerTransport, CallHandle
from .negotiator import CallNegotiator, CallResources, CallState, ReadinessJoin
from .identity import IdentityManager
from .session import VideoCallSession

__all__ = [
    "CallStatus",
    "ice_config",
    "media_config",
    "signaling_config",
    "VideoCallError",
    "MediaAccessError",
    "CallEstablishmentError",
    "IdentityRegistrationError",
    "SignalingError",
    "SignalingReadError",
    "SignalingWriteError",
    "RowNotFoundError",
    "DisplaySurface",
    "LocalMediaStream",
    "MediaStream",
    "get_user_media",
    "DataBackend",
    "HttpDataBackend",
    "Role",
    "SignalingRelay",
    "BrokerPeerTransport",
    "CallHandle",
    "CallNegotiator",
    "CallResources",
    "CallState",
    "ReadinessJoin",
    "IdentityManager",
    "VideoCallSession",
]
