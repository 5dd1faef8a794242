from __future__ import annotations

import json
import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scopechat.service.errors import ValidationError
from scopechat.storage.models import Project, User

# Upper bound on any single free-text field accepted from clients
MAX_STRING_LENGTH = 65536
# Upper bound on the serialized conversation in a chat form field
MAX_MESSAGES_FIELD_BYTES = 4 * 1024 * 1024


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_credentials",
    "unauthorized",
    "not_found",
    "conflict",
    "upstream_timeout",
    "upstream_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if "\x00" in normalized:
        raise ValueError("invalid email address")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Format checks are skipped so a malformed email fails like any other miss
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class UserOut(BaseModel):
    id: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(id=user.id, email=user.email)


class AuthResponse(BaseModel):
    token: str
    user: UserOut


class LogoutResponse(BaseModel):
    revoked: bool = True


class ProjectCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    system_prompt: str = Field(..., alias="systemPrompt", max_length=MAX_STRING_LENGTH)

    @field_validator("name", "system_prompt")
    @classmethod
    def _reject_nul(cls, value: str) -> str:
        if "\x00" in value:
            raise ValueError("must not contain NUL characters")
        return value


class ProjectOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    system_prompt: str = Field(..., alias="systemPrompt")
    user_id: str = Field(..., alias="userId")
    created_at: str = Field(..., alias="createdAt")

    @classmethod
    def from_project(cls, project: Project) -> "ProjectOut":
        return cls.model_validate(project.to_public())


class ChatResponse(BaseModel):
    message: str


def parse_chat_messages(raw: Optional[str]) -> List[Any]:
    """Decode the ``messages`` form field into a list of raw turns.

    Raises:
        ValidationError: the field is not a JSON array
    """
    if raw is None or not raw.strip():
        return []
    if len(raw.encode("utf-8")) > MAX_MESSAGES_FIELD_BYTES:
        raise ValidationError("messages field is too large", detail={"field": "messages"})
    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise ValidationError(
            "messages must be a JSON array", detail={"field": "messages"}
        ) from exc
    if not isinstance(parsed, list):
        raise ValidationError("messages must be a JSON array", detail={"field": "messages"})
    return parsed
