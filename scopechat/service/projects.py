from __future__ import annotations

from typing import List, Optional, Protocol

from scopechat.logging import get_logger
from scopechat.service.errors import NotFoundError, ValidationError
from scopechat.storage.models import Project

logger = get_logger(__name__)

MAX_PROJECT_NAME_CHARS = 200
MAX_SYSTEM_PROMPT_CHARS = 20_000


class ProjectStore(Protocol):
    def create_project(self, user_id: str, name: str, system_prompt: str) -> Project: ...

    def get_project(self, project_id: str) -> Optional[Project]: ...

    def list_projects(self, user_id: str) -> List[Project]: ...


class ProjectRegistry:
    """Owner-scoped access to projects."""

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def create(self, user_id: str, name: str, system_prompt: str) -> Project:
        """Create a project owned by ``user_id``.

        Raises:
            ValidationError: name or system prompt empty after trimming, or too long
        """
        clean_name = (name or "").strip()
        clean_prompt = (system_prompt or "").strip()
        if not clean_name:
            raise ValidationError("name is required", detail={"field": "name"})
        if not clean_prompt:
            raise ValidationError(
                "systemPrompt is required", detail={"field": "systemPrompt"}
            )
        if "\x00" in clean_name:
            raise ValidationError(
                "name must not contain NUL characters", detail={"field": "name"}
            )
        if "\x00" in clean_prompt:
            raise ValidationError(
                "systemPrompt must not contain NUL characters",
                detail={"field": "systemPrompt"},
            )
        if len(clean_name) > MAX_PROJECT_NAME_CHARS:
            raise ValidationError(
                f"name must be at most {MAX_PROJECT_NAME_CHARS} characters",
                detail={"field": "name"},
            )
        if len(clean_prompt) > MAX_SYSTEM_PROMPT_CHARS:
            raise ValidationError(
                f"systemPrompt must be at most {MAX_SYSTEM_PROMPT_CHARS} characters",
                detail={"field": "systemPrompt"},
            )
        project = self.store.create_project(user_id, clean_name, clean_prompt)
        logger.info("project_created", user_id=user_id, project_id=project.id)
        return project

    def list_for_user(self, user_id: str) -> List[Project]:
        return self.store.list_projects(user_id)

    def get_owned(self, user_id: str, project_id: str) -> Project:
        # A foreign project and a missing one are indistinguishable to the caller
        project = self.store.get_project(project_id) if project_id else None
        if project is None or project.user_id != user_id:
            raise NotFoundError("project not found", detail={"project_id": project_id})
        return project
