"""Holochain conductor client package."""

__version__ = "0.1.0"

from .admin import AdminClient
from .app import AppClient, AppSignal
from .codec import Frame, FrameKind, decode_frame, encode_frame
from .connection import Connection, ConnectionOptions, RetryOptions, connect
from .errors import (
    AuthenticationError,
    ClientClosedWithPendingRequestsError,
    HolochainClientError,
    HolochainConnectionError,
    HolochainError,
    MalformedFrameError,
    NoSigningCredentialsError,
    RandomnessUnavailableError,
    RequestTimeoutError,
    ResponseCanceledError,
    SigningError,
    SigningWindowExpiredError,
    SocketNotOpenError,
    UnknownFrameKindError,
    classify_response,
)
from .events import EventChannel
from .signing import (
    CallZomeRequest,
    CallZomeRequestSigned,
    KeyPair,
    SigningCredentials,
    SigningCredentialsStore,
    authorize_signing_credentials,
    generate_signing_key_pair,
    sign_zome_call,
)

__all__ = [
    "AdminClient",
    "AppClient",
    "AppSignal",
    "Connection",
    "ConnectionOptions",
    "RetryOptions",
    "connect",
    "EventChannel",
    "Frame",
    "FrameKind",
    "encode_frame",
    "decode_frame",
    "CallZomeRequest",
    "CallZomeRequestSigned",
    "KeyPair",
    "SigningCredentials",
    "SigningCredentialsStore",
    "authorize_signing_credentials",
    "generate_signing_key_pair",
    "sign_zome_call",
    "HolochainClientError",
    "HolochainConnectionError",
    "SocketNotOpenError",
    "ClientClosedWithPendingRequestsError",
    "RequestTimeoutError",
    "AuthenticationError",
    "ResponseCanceledError",
    "MalformedFrameError",
    "UnknownFrameKindError",
    "HolochainError",
    "SigningError",
    "NoSigningCredentialsError",
    "RandomnessUnavailableError",
    "SigningWindowExpiredError",
    "classify_response",
    "__version__",
]
