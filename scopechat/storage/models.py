from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email}


@dataclass
class Project:
    """A named system prompt owned by exactly one user."""

    id: str
    user_id: str
    name: str
    system_prompt: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, name: str, system_prompt: str) -> "Project":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            system_prompt=system_prompt,
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "systemPrompt": self.system_prompt,
            "userId": self.user_id,
            "createdAt": self.created_at.isoformat(),
        }
