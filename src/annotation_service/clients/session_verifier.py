"""Local verification of actor session tokens."""

from __future__ import annotations

import base64
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from joserfc import jws
from joserfc.errors import BadSignatureError
from joserfc.jwk import OKPKey

from annotation_service.core.exceptions import AuthenticationError
from annotation_service.services.lifecycle import ActorRole
from annotation_service.services.records import WorkerCapability, parse_translation_languages


@dataclass(frozen=True)
class ActorSession:
    """The verified identity behind a request."""

    user_id: str
    email: str
    role: ActorRole
    access_token: str
    translation_languages: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.role is ActorRole.ADMIN

    @property
    def capability(self) -> WorkerCapability:
        return WorkerCapability(
            id=self.user_id,
            email=self.email,
            translation_languages=self.translation_languages,
        )


class SessionVerifier:
    """
    Verifies EdDSA JWS session tokens issued by the session service.

    The payload carries ``user_id``, ``email``, ``role``, ``access_token``
    (the row-store credential), and optionally ``translation_languages``,
    ``iss`` and ``exp``.
    """

    def __init__(
        self,
        public_key: Ed25519PublicKey,
        issuer: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        raw_public = public_key.public_bytes_raw()
        jwk_dict: dict[str, str | list[str]] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
        }
        self._key = OKPKey.import_key(jwk_dict)
        self._issuer = issuer
        self._clock = clock

    @classmethod
    def from_pem_file(cls, path: str, issuer: str) -> SessionVerifier:
        public_key = load_pem_public_key(Path(path).read_bytes())
        if not isinstance(public_key, Ed25519PublicKey):
            msg = "Session public key must be an Ed25519 public key"
            raise ValueError(msg)
        return cls(public_key, issuer)

    def verify(self, token: str) -> ActorSession:
        """
        Verify a compact JWS and return the session it carries.

        Raises:
            AuthenticationError: bad format, bad signature, wrong issuer, expired,
                                 or a payload missing required fields
        """
        if token.count(".") != 2:
            raise AuthenticationError("Session token is not a JWS compact serialization")

        try:
            obj = jws.deserialize_compact(token, self._key, algorithms=["EdDSA"])
        except BadSignatureError as exc:
            raise AuthenticationError("Session token signature is invalid") from exc
        except Exception as exc:
            raise AuthenticationError("Session token could not be verified") from exc

        try:
            payload = json.loads(obj.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AuthenticationError("Session payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise AuthenticationError("Session payload must be a JSON object")

        issuer = payload.get("iss")
        if issuer is not None and issuer != self._issuer:
            raise AuthenticationError("Session token was issued by an unknown issuer")

        expires_at = payload.get("exp")
        if expires_at is not None:
            if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
                raise AuthenticationError("Session expiry must be a number")
            if expires_at <= self._clock():
                raise AuthenticationError("Session has expired", error="SESSION_EXPIRED")

        fields: dict[str, str] = {}
        for name in ("user_id", "email", "role", "access_token"):
            value = payload.get(name)
            if not isinstance(value, str) or not value:
                raise AuthenticationError(f"Session payload is missing '{name}'")
            fields[name] = value

        try:
            role = ActorRole(fields["role"].lower())
        except ValueError as exc:
            raise AuthenticationError(f"Unknown session role: {fields['role']!r}") from exc

        languages = payload.get("translation_languages")
        if languages is not None and not isinstance(languages, (str, list)):
            raise AuthenticationError("Session translation_languages must be a list")

        return ActorSession(
            user_id=fields["user_id"],
            email=fields["email"],
            role=role,
            access_token=fields["access_token"],
            translation_languages=parse_translation_languages(languages),
        )
