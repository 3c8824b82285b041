"""Session/Identity Resolver.

Two credential forms resolve to the same :class:`~chathub.models.Principal`:

* ``{"session": sid}``: a web session cookie, looked up in the directory store.
* ``{"token": str}``: a self-contained token signed by the hub identity.

A token is ``base64url(cbor(claims)) + "." + base64url(signature)``. The
signature covers the encoded claims and is made with the hub's Reticulum
identity (Ed25519). Claims are only read after the signature and expiry check.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Protocol

from .codec import decode, encode
from .config import HubRuntimeConfig
from .constants import CLIENT_DESKTOP, CLIENT_TYPES, CLIENT_WEB, ROLE_ADMIN, ROLE_USER
from .errors import Unauthenticated
from .models import Principal, User
from .store import DirectoryStore
from .util import normalize_username


class Signer(Protocol):
    """The slice of ``RNS.Identity`` used for tokens."""

    def sign(self, message: bytes) -> bytes: ...

    def validate(self, signature: bytes, message: bytes) -> bool: ...


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    pad = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + pad)


class IdentityResolver:
    def __init__(
        self,
        store: DirectoryStore,
        signer: Signer,
        config: HubRuntimeConfig | None = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.config = config or HubRuntimeConfig()
        self.log = logging.getLogger("chathub.identity")

    def issue_token(
        self,
        user: User,
        ttl_s: float | None = None,
        client: str = CLIENT_DESKTOP,
    ) -> str:
        if client not in CLIENT_TYPES:
            raise ValueError(f"unknown client type {client!r}")
        ttl = float(self.config.token_ttl_s if ttl_s is None else ttl_s)
        iat = int(time.time())
        claims = {
            "sub": user.username,
            "name": user.display_name or user.username,
            "color": user.color,
            "role": user.role,
            "iat": iat,
            "exp": iat + int(ttl),
            "client": client,
        }
        blob = encode(claims)
        signature = self.signer.sign(blob)
        return f"{_b64encode(blob)}.{_b64encode(signature)}"

    async def resolve(self, credential: Any) -> Principal:
        principal, _ = await self.authenticate(credential)
        return principal

    async def authenticate(self, credential: Any) -> tuple[Principal, str]:
        """Resolve a HELLO body into ``(principal, client_type)``.

        Raises :class:`Unauthenticated` for anything missing, malformed,
        unknown or expired.
        """
        if not isinstance(credential, dict):
            raise Unauthenticated("credential required")

        sid = credential.get("session")
        if isinstance(sid, str) and sid:
            return await self._from_session(sid), CLIENT_WEB

        token = credential.get("token")
        if isinstance(token, str) and token:
            claims = self._verify_token(token)
            client = claims.get("client") or credential.get("client") or CLIENT_DESKTOP
            if client not in CLIENT_TYPES:
                client = CLIENT_DESKTOP
            return self._principal_from_claims(claims), client

        raise Unauthenticated("credential required")

    async def _from_session(self, sid: str) -> Principal:
        record = await self.store.get_session(sid)
        if record is None:
            self.log.debug("Unknown or expired session")
            raise Unauthenticated("session expired or invalid")
        return record.user.principal()

    def _verify_token(self, token: str) -> dict[str, Any]:
        head, sep, tail = token.partition(".")
        if not sep or not head or not tail:
            raise Unauthenticated("malformed token")
        try:
            blob = _b64decode(head)
            signature = _b64decode(tail)
        except (ValueError, TypeError) as e:
            raise Unauthenticated("malformed token") from e

        try:
            valid = bool(self.signer.validate(signature, blob))
        except Exception:
            self.log.debug("Token signature check raised", exc_info=True)
            valid = False
        if not valid:
            raise Unauthenticated("invalid token signature")

        try:
            claims = decode(blob)
        except Exception as e:
            raise Unauthenticated("malformed token") from e
        if not isinstance(claims, dict):
            raise Unauthenticated("malformed token")

        exp = claims.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool) or exp <= int(time.time()):
            raise Unauthenticated("token expired")
        return claims

    def _principal_from_claims(self, claims: dict[str, Any]) -> Principal:
        username = normalize_username(
            claims.get("sub"), max_chars=self.config.username_max_chars
        )
        if username is None:
            raise Unauthenticated("token subject invalid")
        name = claims.get("name")
        color = claims.get("color")
        role = claims.get("role")
        return Principal(
            username=username,
            display_name=name if isinstance(name, str) and name else username,
            color=color if isinstance(color, str) and color else "#000000",
            role=ROLE_ADMIN if role == ROLE_ADMIN else ROLE_USER,
        )
