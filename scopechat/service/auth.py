from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from scopechat.config import Settings
from scopechat.logging import get_logger
from scopechat.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    ValidationError,
)
from scopechat.storage.errors import ConstraintViolation
from scopechat.storage.models import User
from scopechat.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_INVALID_TOKEN_MESSAGE = "invalid or expired token"
_INVALID_CREDENTIALS_MESSAGE = "invalid email or password"


class AuthStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    """Verified identity handed explicitly into every service call."""

    user_id: str
    token_id: str
    expires_at: int


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Registration, login and stateless bearer-token verification."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Fallback denylist when Redis is not configured
        self._state_lock = threading.Lock()
        self._denylisted_tokens: dict[str, int] = {}
        self._dummy_hash: Optional[str] = None

    async def register(self, email: str, password: str) -> Tuple[User, str]:
        """Create a user and return it together with a fresh access token.

        Raises:
            ValidationError: email or password is empty
            ConflictError: the email is already registered
        """
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized or "\x00" in normalized:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})
        pwd_hash, algo = self._hash_password(password)
        try:
            user = self.store.create_user(normalized, pwd_hash, algo)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user, self._issue_access_token(user)

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        """Exchange credentials for an access token.

        An unknown email and a wrong password raise the same error after the
        same amount of hashing work.

        Raises:
            InvalidCredentialsError: email absent or password mismatch
        """
        normalized = normalize_email(email)
        # NUL can never be stored, so it is a miss without a lookup
        lookup_ok = bool(normalized) and "\x00" not in normalized
        user = self.store.get_user_by_email(normalized) if lookup_ok else None
        if not user:
            self._burn_dummy_verification(password or "")
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS_MESSAGE)
        if not self.verify_password(user.id, password or ""):
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS_MESSAGE)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, self._issue_access_token(user)

    async def verify(self, token: Any) -> str:
        """Return the user id a valid, unrevoked token was issued to."""
        return (await self._verify_context(token)).user_id

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to an ``AuthContext``."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        return await self._verify_context(token)

    async def revoke(self, ctx: AuthContext) -> None:
        """Denylist the token until it would have expired anyway."""
        ttl = max(0, int(ctx.expires_at - time.time()))
        if ttl <= 0:
            return
        if self.cache:
            await self.cache.denylist_access_token(ctx.token_id, ttl)
        else:
            with self._state_lock:
                self._purge_expired_denylist()
                self._denylisted_tokens[ctx.token_id] = ctx.expires_at
        self.logger.info("access_token_revoked", user_id=ctx.user_id, jti=ctx.token_id)

    async def _verify_context(self, token: Any) -> AuthContext:
        if not isinstance(token, str) or not token:
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        user_id = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(user_id, str) or not isinstance(jti, str):
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        if await self._is_denylisted(jti):
            self.logger.info("access_token_denylisted", jti=jti)
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        if not self.store.get_user(user_id):
            raise AuthenticationError(_INVALID_TOKEN_MESSAGE)
        return AuthContext(user_id=user_id, token_id=jti, expires_at=int(payload["exp"]))

    async def _is_denylisted(self, jti: str) -> bool:
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except Exception as exc:
                # Fail-open on Redis errors
                self.logger.warning("denylist_check_failed", jti=jti, error=str(exc))
                return False
        with self._state_lock:
            expires_at = self._denylisted_tokens.get(jti)
        return expires_at is not None and expires_at > time.time()

    def _purge_expired_denylist(self) -> None:
        now = time.time()
        for jti, expires_at in list(self._denylisted_tokens.items()):
            if expires_at <= now:
                self._denylisted_tokens.pop(jti, None)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_dummy_verification(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            pass

    def _issue_access_token(self, user: User) -> str:
        issued_at = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "iat": issued_at,
            "exp": issued_at + self.settings.session_ttl_minutes * 60,
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed, unexpired token, else None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm; anything but HS256 is rejected outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if exp <= time.time():
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
