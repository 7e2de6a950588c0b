"""
Correlation state carried through the admin-consent redirect.

The token is an HS256 JWT. It travels through the identity provider and the
browser history, so it holds identifiers only, never secrets:

    sub   customer id
    app   application (client) id the consent was requested for
    tid   tenant id or domain the consent URL targeted
    perms granted permission names
    iat / exp

decode() never raises: malformed, tampered, expired or incomplete tokens come
back as a DecodeFailure the caller can turn into a user-safe message.
"""
import logging
import os
import time
from dataclasses import dataclass, field

from jose import ExpiredSignatureError, JWTError, jwt

log = logging.getLogger(__name__)

ALGORITHM           = "HS256"
DEFAULT_TTL_SECONDS = 3600
CLOCK_SKEW_SECONDS  = 300
MAX_TOKEN_LENGTH    = 2048


@dataclass(frozen=True)
class CorrelationState:
    customer_id: str
    application_client_id: str
    tenant_id: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    issued_at: int = 0


@dataclass(frozen=True)
class DecodeFailure:
    # empty | malformed | bad_signature | missing_fields | expired
    reason: str


class StateCodec:
    def __init__(self, signing_key: str, max_age_seconds: int = DEFAULT_TTL_SECONDS):
        if not signing_key:
            raise ValueError("A signing key is required for consent state")
        self._key = signing_key
        self.max_age_seconds = max_age_seconds

    @classmethod
    def from_env(cls) -> "StateCodec":
        """
        Sign with CONSENT_STATE_KEY, or with the operator secret when no
        dedicated key is configured.
        """
        key = os.environ.get("CONSENT_STATE_KEY")
        if not key:
            log.warning("CONSENT_STATE_KEY is not set; signing consent state with the operator secret")
            key = os.environ["AZURE_CLIENT_SECRET"]
        ttl = int(os.environ.get("CONSENT_STATE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        return cls(key, ttl)

    def encode(self, state: CorrelationState) -> str:
        issued_at = state.issued_at or int(time.time())
        claims = {
            "sub":   state.customer_id,
            "app":   state.application_client_id,
            "tid":   state.tenant_id,
            "perms": sorted(state.permissions),
            "iat":   issued_at,
            "exp":   issued_at + self.max_age_seconds,
        }
        return jwt.encode(claims, self._key, algorithm=ALGORITHM)

    def decode(self, token) -> CorrelationState | DecodeFailure:
        if not isinstance(token, str) or not token.strip():
            return DecodeFailure("empty")
        token = token.strip()
        if len(token) > MAX_TOKEN_LENGTH or not token.isascii():
            return DecodeFailure("malformed")

        # Deeply nested JSON can exhaust the decoder's recursion limit.
        try:
            jwt.get_unverified_claims(token)
        except (JWTError, RecursionError, ValueError, TypeError):
            return DecodeFailure("malformed")

        try:
            claims = jwt.decode(token, self._key, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            return DecodeFailure("expired")
        except (JWTError, RecursionError, ValueError, TypeError):
            return DecodeFailure("bad_signature")

        ids = [claims.get(k) for k in ("sub", "app", "tid")]
        if not all(isinstance(v, str) and v.strip() for v in ids):
            return DecodeFailure("missing_fields")

        issued_at = claims.get("iat")
        if isinstance(issued_at, bool) or not isinstance(issued_at, int) or "exp" not in claims:
            return DecodeFailure("missing_fields")
        now = time.time()
        if issued_at > now + CLOCK_SKEW_SECONDS or now - issued_at > self.max_age_seconds:
            return DecodeFailure("expired")

        perms = claims.get("perms") or []
        if not isinstance(perms, list) or not all(isinstance(p, str) for p in perms):
            return DecodeFailure("malformed")

        return CorrelationState(
            customer_id=ids[0],
            application_client_id=ids[1],
            tenant_id=ids[2],
            permissions=frozenset(perms),
            issued_at=issued_at,
        )
