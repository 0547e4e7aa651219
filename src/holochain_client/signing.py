"""Zome call signing: key generation, credential storage and request signing.

A zome call is only accepted by the conductor when it is signed by a key that
was assigned a capability grant for the target cell. ``authorize_signing_credentials``
creates such a grant and remembers the key material in a ``SigningCredentialsStore``;
``sign_zome_call`` later looks the credentials up by cell id.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .codec import encode_payload
from .errors import NoSigningCredentialsError, RandomnessUnavailableError, SigningWindowExpiredError

CellId = Tuple[bytes, bytes]
GrantFunction = Callable[[CellId, Mapping[str, Any], bytes, bytes], Any]

AGENT_PREFIX = bytes([132, 32, 36])
CAP_SECRET_LENGTH = 64
NONCE_LENGTH = 32
NONCE_EXPIRY_WINDOW = 5 * 60.0

__all__ = [
    "AGENT_PREFIX",
    "CallZomeRequest",
    "CallZomeRequestSigned",
    "CellId",
    "KeyPair",
    "NONCE_EXPIRY_WINDOW",
    "SigningCredentials",
    "SigningCredentialsStore",
    "authorize_signing_credentials",
    "dht_location_from_32",
    "generate_signing_key_pair",
    "granted_functions",
    "hash_zome_call",
    "nonce_expiration",
    "random_cap_secret",
    "random_nonce",
    "sign_zome_call",
]


@dataclass(frozen=True, slots=True)
class KeyPair:
    private_key: Ed25519PrivateKey = field(repr=False)
    public_key: bytes

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


@dataclass(frozen=True, slots=True)
class SigningCredentials:
    cap_secret: bytes = field(repr=False)
    key_pair: KeyPair
    signing_key: bytes


@dataclass(slots=True)
class CallZomeRequest:
    """An unsigned zome call. ``provenance`` defaults to the authorized signing key."""

    cell_id: CellId
    zome_name: str
    fn_name: str
    payload: Any = None
    provenance: bytes | None = None

    def __post_init__(self) -> None:
        if len(self.cell_id) != 2:
            raise ValueError("cell_id must be a (dna_hash, agent_pub_key) pair")
        self.cell_id = (bytes(self.cell_id[0]), bytes(self.cell_id[1]))
        if not self.zome_name or not self.fn_name:
            raise ValueError("zome_name and fn_name must be provided")


@dataclass(frozen=True, slots=True)
class CallZomeRequestSigned:
    cell_id: CellId
    zome_name: str
    fn_name: str
    payload: bytes
    cap_secret: bytes | None
    provenance: bytes
    nonce: bytes
    expires_at: int
    signature: bytes

    def to_wire(self) -> dict[str, Any]:
        return {
            "cell_id": [self.cell_id[0], self.cell_id[1]],
            "zome_name": self.zome_name,
            "fn_name": self.fn_name,
            "payload": self.payload,
            "cap_secret": self.cap_secret,
            "provenance": self.provenance,
            "nonce": self.nonce,
            "expires_at": self.expires_at,
            "signature": self.signature,
        }


class SigningCredentialsStore:
    """Signing credentials by cell id. Re-authorizing a cell replaces its entry.

    A single lock guards the map; it is held only for dict operations, never
    across a grant round-trip, so signing one cell never waits on authorizing
    another.
    """

    def __init__(self) -> None:
        self._credentials: dict[CellId, SigningCredentials] = {}
        self._lock = threading.Lock()

    def get(self, cell_id: Sequence[bytes]) -> SigningCredentials | None:
        with self._lock:
            return self._credentials.get(_cell_key(cell_id))

    def set(self, cell_id: Sequence[bytes], credentials: SigningCredentials) -> None:
        with self._lock:
            self._credentials[_cell_key(cell_id)] = credentials

    def remove(self, cell_id: Sequence[bytes]) -> SigningCredentials | None:
        with self._lock:
            return self._credentials.pop(_cell_key(cell_id), None)

    def clear(self) -> None:
        with self._lock:
            self._credentials.clear()

    def __contains__(self, cell_id: object) -> bool:
        try:
            key = _cell_key(cell_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False
        with self._lock:
            return key in self._credentials

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)


def _cell_key(cell_id: Sequence[bytes]) -> CellId:
    dna_hash, agent_pub_key = cell_id
    return bytes(dna_hash), bytes(agent_pub_key)


def _random_bytes(length: int) -> bytes:
    try:
        return secrets.token_bytes(length)
    except NotImplementedError as exc:
        raise RandomnessUnavailableError("no cryptographic random source is available") from exc


def random_nonce() -> bytes:
    return _random_bytes(NONCE_LENGTH)


def random_cap_secret() -> bytes:
    return _random_bytes(CAP_SECRET_LENGTH)


def _now_micros() -> int:
    return time.time_ns() // 1_000


def nonce_expiration(window: float = NONCE_EXPIRY_WINDOW, *, now: int | None = None) -> int:
    """Expiry timestamp in microseconds, ``window`` seconds after ``now``."""

    if now is None:
        now = _now_micros()
    return now + int(window * 1_000_000)


def dht_location_from_32(core: bytes) -> bytes:
    """Derive the 4-byte DHT location suffix of a hash from its 32-byte core."""

    digest = hashlib.blake2b(core, digest_size=16).digest()
    location = bytearray(digest[:4])
    for offset in (4, 8, 12):
        for i in range(4):
            location[i] ^= digest[offset + i]
    return bytes(location)


def generate_signing_key_pair() -> tuple[KeyPair, bytes]:
    """Generate an Ed25519 key pair and the agent pub key derived from it."""

    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    signing_key = AGENT_PREFIX + public_key + dht_location_from_32(public_key)
    return KeyPair(private_key=private_key, public_key=public_key), signing_key


def granted_functions(functions: Iterable[tuple[str, str]] | None = None) -> dict[str, Any]:
    """Grant scope for ``functions`` (``(zome, fn)`` pairs); ``None`` grants all."""

    if functions is None:
        return {"All": None}
    listed = [[zome_name, fn_name] for zome_name, fn_name in functions]
    if not listed:
        raise ValueError("functions must contain at least one (zome, fn) pair")
    return {"Listed": listed}


def authorize_signing_credentials(
    grant: GrantFunction,
    cell_id: Sequence[bytes],
    functions: Iterable[tuple[str, str]] | None = None,
    *,
    store: SigningCredentialsStore,
) -> SigningCredentials:
    """Grant a fresh signing key access to ``cell_id`` and store the credentials.

    Every call creates a new grant on the conductor; earlier grants stay valid
    until they are revoked separately.
    """

    key = _cell_key(cell_id)
    cap_secret = random_cap_secret()
    key_pair, signing_key = generate_signing_key_pair()
    grant(key, granted_functions(functions), signing_key, cap_secret)
    credentials = SigningCredentials(cap_secret=cap_secret, key_pair=key_pair, signing_key=signing_key)
    store.set(key, credentials)
    return credentials


def hash_zome_call(unsigned: Mapping[str, Any]) -> bytes:
    """BLAKE2b-256 of the canonical msgpack encoding of an unsigned zome call."""

    ordered = {
        "provenance": unsigned["provenance"],
        "cell_id": [unsigned["cell_id"][0], unsigned["cell_id"][1]],
        "zome_name": unsigned["zome_name"],
        "fn_name": unsigned["fn_name"],
        "cap_secret": unsigned["cap_secret"],
        "payload": unsigned["payload"],
        "nonce": unsigned["nonce"],
        "expires_at": unsigned["expires_at"],
    }
    return hashlib.blake2b(encode_payload(ordered), digest_size=32).digest()


def sign_zome_call(
    request: CallZomeRequest,
    store: SigningCredentialsStore,
    *,
    expiry_window: float = NONCE_EXPIRY_WINDOW,
    clock: Callable[[], int] = _now_micros,
) -> CallZomeRequestSigned:
    """Sign ``request`` with the credentials authorized for its cell."""

    credentials = store.get(request.cell_id)
    if credentials is None:
        raise NoSigningCredentialsError(request.cell_id)

    now = clock()
    expires_at = nonce_expiration(expiry_window, now=now)
    if expires_at <= now:
        raise SigningWindowExpiredError(
            f"signing window of {expiry_window}s yields an expiry that is not in the future"
        )

    unsigned = {
        "provenance": request.provenance if request.provenance is not None else credentials.signing_key,
        "cell_id": request.cell_id,
        "zome_name": request.zome_name,
        "fn_name": request.fn_name,
        "cap_secret": credentials.cap_secret,
        "payload": encode_payload(request.payload),
        "nonce": random_nonce(),
        "expires_at": expires_at,
    }
    signature = credentials.key_pair.sign(hash_zome_call(unsigned))
    return CallZomeRequestSigned(signature=signature, **unsigned)
