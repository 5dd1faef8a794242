from __future__ import annotations

import threading
import uuid
from typing import Dict, List, Optional

from scopechat.logging import get_logger
from scopechat.storage.errors import ConstraintViolation
from scopechat.storage.models import Project, User


class MemoryStore:
    """In-process backing store for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # Insertion ordered; listing walks it backwards for newest-first
        self.projects: Dict[str, Project] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()

    def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User:
        """Insert a user together with its credential record."""
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email)
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self.logger.info("user_created", user_id=user.id)
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def create_project(self, user_id: str, name: str, system_prompt: str) -> Project:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for project", {"user_id": user_id}
                )
            project = Project.new(user_id, name, system_prompt)
            self.projects[project.id] = project
            return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            return self.projects.get(project_id)

    def list_projects(self, user_id: str) -> List[Project]:
        with self._data_lock:
            return [
                p for p in reversed(list(self.projects.values())) if p.user_id == user_id
            ]

    def ping(self) -> None:
        """Health check; an in-process store is always reachable."""
        with self._data_lock:
            return None
