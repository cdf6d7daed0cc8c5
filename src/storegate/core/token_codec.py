"""
Session token signing and verification.

Tokens are HS256 JWTs (python-jose). Two field-name conventions exist
in the wild for the same claims and both are permanent parts of the
contract:

    standard: sub, tenant_id, tenant_user_id, session_id, email, role, stores
    short:    userId, tenantId, tenantUserId, sessionId, email, role, stores

Decoding normalizes either naming into one internal shape. Tokens that
carry no tenant marker at all come from single-tenant deployments and
normalize to LegacyClaims.

Attack Prevention:
- Signature and expiry verified on every decode
- Algorithm pinned (alg=none and algorithm confusion rejected)
- Multi-tenant tokens missing tenant id or session id rejected
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class ClaimNaming(str, Enum):
    """Field-name convention used when signing."""
    STANDARD = "standard"
    SHORT = "short"


# internal attribute -> (standard name, short name)
_FIELD_NAMES: Dict[str, Tuple[str, str]] = {
    "user_id": ("sub", "userId"),
    "tenant_id": ("tenant_id", "tenantId"),
    "tenant_user_id": ("tenant_user_id", "tenantUserId"),
    "session_id": ("session_id", "sessionId"),
    "email": ("email", "email"),
    "role": ("role", "role"),
    "stores": ("stores", "stores"),
}


@dataclass(frozen=True)
class TenantClaims:
    """Normalized claims of a multi-tenant session token."""
    user_id: str
    tenant_id: str
    tenant_user_id: str
    session_id: str
    email: str = ""
    role: str = ""
    stores: Tuple[str, ...] = ()
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)


@dataclass(frozen=True)
class LegacyClaims:
    """Normalized claims of a single-tenant session token."""
    user_id: str
    session_id: str
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)


SessionClaims = Union[TenantClaims, LegacyClaims]


@dataclass(frozen=True)
class IssuedToken:
    """A freshly signed token and its expiry."""
    token: str
    expires_at: datetime


def _pick(payload: Mapping[str, Any], attr: str) -> Any:
    standard, short = _FIELD_NAMES[attr]
    value = payload.get(standard)
    if value is None:
        value = payload.get(short)
    return value


def _as_id(value: Any) -> Optional[str]:
    """Ids may arrive as strings or integers; empty means absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def normalize_claims(payload: Mapping[str, Any]) -> Optional[SessionClaims]:
    """
    Normalize a decoded payload of either naming into one claim variant.

    Returns TenantClaims when a tenant marker is present, LegacyClaims
    when the payload is single-tenant, or None when required fields are
    missing or have the wrong type.
    """
    user_id = _as_id(_pick(payload, "user_id"))
    session_id = _as_id(_pick(payload, "session_id"))
    if user_id is None or session_id is None:
        return None

    issued_at = payload.get("iat")
    expires_at = payload.get("exp")

    has_tenant_marker = any(
        name in payload for name in _FIELD_NAMES["tenant_id"]
    )
    if not has_tenant_marker:
        return LegacyClaims(
            user_id=user_id,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    tenant_id = _as_id(_pick(payload, "tenant_id"))
    if tenant_id is None:
        return None

    stores = _pick(payload, "stores")
    if stores is None:
        stores = []
    if not isinstance(stores, list):
        return None
    store_ids = tuple(_as_id(s) for s in stores)
    if any(s is None for s in store_ids):
        return None

    email = _pick(payload, "email")
    role = _pick(payload, "role")
    if not isinstance(email or "", str) or not isinstance(role or "", str):
        return None

    return TenantClaims(
        user_id=user_id,
        tenant_id=tenant_id,
        tenant_user_id=_as_id(_pick(payload, "tenant_user_id")) or "",
        session_id=session_id,
        email=email or "",
        role=role or "",
        stores=store_ids,
        issued_at=issued_at,
        expires_at=expires_at,
    )


class TokenCodec:
    """
    Signs and verifies session tokens.

    One instance per process, created by the application entry point.
    The signing secret lives on the instance only.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        lifetime: timedelta = timedelta(hours=8),
    ):
        """
        Initialize codec.

        Args:
            secret: HMAC signing secret (min 32 chars)
            algorithm: JWS algorithm
            lifetime: Validity window of issued tokens

        Raises:
            ValueError: If the secret is too short
        """
        if not secret or len(secret) < 32:
            raise ValueError("Token signing secret must be at least 32 characters")

        self._secret = secret
        self.algorithm = algorithm
        self.lifetime = lifetime

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            secret=settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            lifetime=timedelta(hours=settings.TOKEN_LIFETIME_HOURS),
        )

    def _payload(self, claims: SessionClaims, naming: ClaimNaming) -> Dict[str, Any]:
        index = 0 if naming == ClaimNaming.STANDARD else 1
        payload: Dict[str, Any] = {}

        if isinstance(claims, TenantClaims):
            attrs = ("user_id", "tenant_id", "tenant_user_id", "session_id", "email", "role")
            for attr in attrs:
                payload[_FIELD_NAMES[attr][index]] = getattr(claims, attr)
            payload["stores"] = list(claims.stores)
        else:
            for attr in ("user_id", "session_id"):
                payload[_FIELD_NAMES[attr][index]] = getattr(claims, attr)

        return payload

    def issue(
        self,
        claims: SessionClaims,
        naming: ClaimNaming = ClaimNaming.STANDARD,
        lifetime: Optional[timedelta] = None,
    ) -> IssuedToken:
        """
        Sign claims and report the expiry of the resulting token.

        Args:
            claims: Claims to sign (timing fields are ignored)
            naming: Field-name convention to emit
            lifetime: Override of the default validity window

        Returns:
            IssuedToken with the compact token and its expiry (UTC)
        """
        issued_at = int(time.time())
        expires_at = issued_at + int((lifetime or self.lifetime).total_seconds())

        payload = self._payload(claims, naming)
        payload["iat"] = issued_at
        payload["exp"] = expires_at

        token = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def sign(
        self,
        claims: SessionClaims,
        naming: ClaimNaming = ClaimNaming.STANDARD,
        lifetime: Optional[timedelta] = None,
    ) -> str:
        """Sign claims and return the compact token."""
        return self.issue(claims, naming=naming, lifetime=lifetime).token

    def _decode_verified(self, token: str) -> Optional[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_iat": True,
                    "verify_aud": False,
                    "require_exp": True,
                },
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Session token expired")
        except JWTError as e:
            logger.debug(f"Session token rejected: {e}")
        except Exception as e:
            logger.warning(f"Unexpected error during token verification: {e}", exc_info=True)
        return None

    def verify_session(self, token: str) -> Optional[SessionClaims]:
        """
        Verify a token of any supported shape.

        Returns:
            TenantClaims or LegacyClaims, or None if the token is invalid
            for any reason. Never raises.
        """
        payload = self._decode_verified(token)
        if payload is None:
            return None

        claims = normalize_claims(payload)
        if claims is None:
            logger.debug("Session token payload is malformed")
        return claims

    def verify(self, token: str) -> Optional[TenantClaims]:
        """
        Verify a multi-tenant session token.

        Returns:
            TenantClaims, or None on bad signature, expiry, malformed
            payload, or missing tenant id / session id. Never raises.
        """
        claims = self.verify_session(token)
        if isinstance(claims, TenantClaims):
            return claims
        return None

    def decode_unsafe(self, token: str) -> Optional[SessionClaims]:
        """
        Decode WITHOUT verifying the signature.

        Diagnostic use only. Never base an authorization decision on
        the result.
        """
        try:
            payload = jwt.get_unverified_claims(token)
        except JWTError:
            return None
        if not isinstance(payload, dict):
            return None
        return normalize_claims(payload)
