from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from antares.logging import get_logger
from antares.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    user_id: str
    access: IssuedToken
    refresh_token: str
    refresh_expires_at: datetime


def hash_session_ref(raw: str) -> str:
    """Storage key for an opaque refresh reference (raw values are never stored)."""
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issue and verify HS256 access tokens and manage refresh sessions.

    The signing secret is handed in by the caller; nothing here reads
    configuration. Access tokens are stateless and verified locally. Refresh
    sessions are opaque random references whose SHA-256 hash keys the
    session store, so a leaked store never yields a usable credential.
    """

    def __init__(
        self,
        signing_secret: str,
        *,
        issuer: str,
        audience: str,
        session_store,
        clock_skew: timedelta = timedelta(seconds=120),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret is required")
        self._secret = signing_secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.sessions = session_store
        self._clock_skew_leeway = clock_skew
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    # -- access tokens -----------------------------------------------------

    def issue_access_token(
        self,
        subject: str,
        ttl: timedelta,
        *,
        claims: Optional[Dict[str, Any]] = None,
    ) -> IssuedToken:
        now = self._now()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload: Dict[str, Any] = dict(claims or {})
        payload.update(
            {
                "sub": subject,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": jti,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "token_type": ACCESS_TOKEN_TYPE,
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(token=token, jti=jti, expires_at=expires_at)

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of a valid access token.

        Raises:
            InvalidTokenError: for any failure; the reason is only logged.
        """
        payload = self._decode(token)
        if payload is None:
            raise InvalidTokenError()
        return payload

    def _reject(self, reason: str, **context: Any) -> None:
        logger.info("access_token_rejected", reason=reason, **context)
        return None

    def _decode(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return self._reject("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return self._reject("malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            return self._reject("header_decode_failed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            return self._reject("invalid_algorithm", alg=alg)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return self._reject("bad_signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return self._reject("payload_decode_failed")
        if not isinstance(payload, dict):
            return self._reject("payload_not_object")

        if payload.get("iss") != self.issuer:
            return self._reject("issuer_mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return self._reject("audience_mismatch")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return self._reject("wrong_token_type")
        if not payload.get("sub"):
            return self._reject("missing_subject")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return self._reject("missing_expiry")
        if exp_ts <= self._clock() - self._clock_skew_leeway.total_seconds():
            return self._reject("expired", sub=payload.get("sub"))
        return payload

    # -- refresh sessions --------------------------------------------------

    async def issue_refresh_session(self, user_id: str, ttl: timedelta) -> str:
        """Create a session for ``user_id`` and return its raw reference.

        Any previous session of the same user is evicted.
        """
        raw = secrets.token_urlsafe(32)
        evicted = await self.sessions.store_refresh_session(
            hash_session_ref(raw), user_id, int(ttl.total_seconds())
        )
        if evicted:
            logger.info("refresh_session_evicted", user_id=user_id)
        return raw

    async def issue_pair(
        self,
        user_id: str,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        claims: Optional[Dict[str, Any]] = None,
    ) -> TokenPair:
        refresh = await self.issue_refresh_session(user_id, refresh_ttl)
        access = self.issue_access_token(user_id, access_ttl, claims=claims)
        return TokenPair(
            user_id=user_id,
            access=access,
            refresh_token=refresh,
            refresh_expires_at=self._now() + refresh_ttl,
        )

    async def rotate(
        self,
        session_ref: Optional[str],
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        claims_for: Callable[[str], Awaitable[Optional[Dict[str, Any]]]],
    ) -> TokenPair:
        """Exchange a refresh reference for a fresh token pair.

        The old session is consumed atomically before anything is issued, so
        concurrent rotations of the same reference yield exactly one success.
        ``claims_for`` returns None when the owner may no longer sign in; the
        consumed session is then not replaced.
        """
        if not session_ref:
            raise InvalidTokenError()
        user_id = await self.sessions.consume_refresh_session(hash_session_ref(session_ref))
        if not user_id:
            logger.info("refresh_rejected", reason="unknown_or_consumed")
            raise InvalidTokenError()
        claims = await claims_for(user_id)
        if claims is None:
            logger.warning("refresh_rejected", reason="owner_ineligible", user_id=user_id)
            raise InvalidTokenError()
        pair = await self.issue_pair(
            user_id, access_ttl=access_ttl, refresh_ttl=refresh_ttl, claims=claims
        )
        logger.info("refresh_rotated", user_id=user_id)
        return pair

    async def revoke(self, session_ref: Optional[str]) -> bool:
        if not session_ref:
            return False
        user_id = await self.sessions.consume_refresh_session(hash_session_ref(session_ref))
        return user_id is not None

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = await self.sessions.delete_user_refresh_sessions(user_id)
        logger.info("refresh_sessions_revoked", user_id=user_id, count=revoked)
        return revoked
