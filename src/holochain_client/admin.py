"""Admin interface wrapper: the operations needed to authorize zome call signing."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from .connection import Connection, ConnectionOptions, connect
from .signing import (
    CellId,
    SigningCredentials,
    SigningCredentialsStore,
    authorize_signing_credentials,
)

SIGNING_GRANT_TAG = "zome-call-signing-key"

__all__ = ["AdminClient", "SIGNING_GRANT_TAG"]


class AdminClient:
    """Thin client for a conductor admin interface."""

    def __init__(
        self,
        connection: Connection,
        *,
        signing_store: SigningCredentialsStore | None = None,
    ) -> None:
        self._connection = connection
        self.signing_store = signing_store if signing_store is not None else SigningCredentialsStore()

    @classmethod
    def connect(
        cls,
        url: str,
        options: ConnectionOptions | Mapping[str, Any] | None = None,
        *,
        signing_store: SigningCredentialsStore | None = None,
    ) -> "AdminClient":
        return cls(connect(url, options), signing_store=signing_store)

    @property
    def connection(self) -> Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "AdminClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def grant_zome_call_capability(
        self,
        cell_id: Sequence[bytes],
        cap_grant: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> None:
        self._connection.request(
            "grant_zome_call_capability",
            {"cell_id": [bytes(cell_id[0]), bytes(cell_id[1])], "cap_grant": dict(cap_grant)},
            timeout=timeout,
        )

    def issue_app_authentication_token(
        self,
        installed_app_id: str,
        *,
        expiry_seconds: int = 30,
        single_use: bool = True,
        timeout: float | None = None,
    ) -> bytes:
        """Issue a token that an app interface connection presents on connect."""

        if not installed_app_id:
            raise ValueError("installed_app_id must be provided")
        if expiry_seconds < 0:
            raise ValueError("expiry_seconds cannot be negative")
        issued = self._connection.request(
            "issue_app_authentication_token",
            {
                "installed_app_id": installed_app_id,
                "expiry_seconds": expiry_seconds,
                "single_use": single_use,
            },
            timeout=timeout,
        )
        if not isinstance(issued, Mapping) or "token" not in issued:
            raise ValueError("Unexpected response for issue_app_authentication_token")
        return bytes(issued["token"])

    def authorize_signing_credentials(
        self,
        cell_id: Sequence[bytes],
        functions: Iterable[tuple[str, str]] | None = None,
        *,
        timeout: float | None = None,
    ) -> SigningCredentials:
        """Grant a new signing key for ``cell_id`` and keep it in ``signing_store``.

        ``functions`` limits the grant to ``(zome, fn)`` pairs; all functions
        are granted when omitted.
        """

        def grant(target: CellId, scope: Mapping[str, Any], signing_key: bytes, cap_secret: bytes) -> None:
            self.grant_zome_call_capability(
                target,
                {
                    "tag": SIGNING_GRANT_TAG,
                    "functions": scope,
                    "access": {
                        "Assigned": {
                            "secret": cap_secret,
                            "assignees": [signing_key],
                        }
                    },
                },
                timeout=timeout,
            )

        return authorize_signing_credentials(grant, cell_id, functions, store=self.signing_store)
