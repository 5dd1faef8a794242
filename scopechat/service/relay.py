from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

from scopechat.logging import get_logger, sanitize_error_message
from scopechat.service.attachments import (
    Attachment,
    ExtractedAttachment,
    read_attachment,
    render_user_content,
)
from scopechat.service.errors import (
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from scopechat.service.llm import GatewayError, GatewayTimeoutError, LLMGateway
from scopechat.service.projects import ProjectRegistry
from scopechat.storage.models import Project

logger = get_logger(__name__)

UPSTREAM_FAILED_MESSAGE = "the assistant is unavailable right now, please try again"
UPSTREAM_TIMEOUT_MESSAGE = "the assistant took too long to respond, please try again"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: TurnRole
    content: str

    def as_message(self) -> dict:
        return {"role": self.role.value, "content": self.content}


def coerce_turn(raw: Any, index: int) -> Turn:
    """Accept a ``Turn`` or a ``{"role", "content"}`` mapping."""
    if isinstance(raw, Turn):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(
            "each message must be an object with role and content",
            detail={"index": index},
        )
    try:
        role = TurnRole(raw.get("role"))
    except ValueError:
        raise ValidationError(
            "message role must be 'user' or 'assistant'",
            detail={"index": index, "role": str(raw.get("role"))[:32]},
        ) from None
    content = raw.get("content", "")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ValidationError(
            "message content must be a string", detail={"index": index}
        )
    return Turn(role=role, content=content)


def coerce_history(raw_turns: Iterable[Any]) -> List[Turn]:
    return [coerce_turn(raw, idx) for idx, raw in enumerate(raw_turns)]


def split_conversation(raw_turns: Sequence[Any]) -> tuple[List[Turn], str]:
    """Split a client-held conversation into prior turns and the new user text.

    A trailing user turn is the new turn; otherwise the whole list is history
    and the new text is empty.
    """
    turns = coerce_history(raw_turns)
    if turns and turns[-1].role is TurnRole.USER:
        return turns[:-1], turns[-1].content
    return turns, ""


def build_messages(
    system_prompt: str, history: Sequence[Turn], user_content: str
) -> List[dict]:
    """Assemble the outbound message list: system, prior turns, new user turn."""
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(turn.as_message() for turn in history)
    messages.append({"role": TurnRole.USER.value, "content": user_content})
    return messages


class ChatRelay:
    """Validates a chat turn, assembles the request and relays it upstream.

    Nothing is persisted: the caller supplies the full history on every call.
    """

    def __init__(
        self,
        projects: ProjectRegistry,
        gateway: LLMGateway,
        *,
        max_history_turns: int = 100,
        upstream_timeout: float = 60.0,
        attachment_timeout: float = 20.0,
        max_attachment_chars: int = 50_000,
    ) -> None:
        self.projects = projects
        self.gateway = gateway
        self.max_history_turns = max_history_turns
        self.upstream_timeout = upstream_timeout
        self.attachment_timeout = attachment_timeout
        self.max_attachment_chars = max_attachment_chars

    async def relay(
        self,
        user_id: str,
        project_id: str,
        history: Sequence[Any],
        new_user_text: Optional[str],
        attachment: Optional[Attachment] = None,
    ) -> str:
        """Relay one turn for ``user_id`` within ``project_id``.

        Raises:
            NotFoundError: project missing or owned by another user
            ValidationError: malformed history, too many turns, or nothing to send
            UpstreamTimeoutError: extraction or completion exceeded its deadline
            UpstreamError: the provider failed or returned nothing usable
        """
        project = self.projects.get_owned(user_id, project_id)
        return await self.relay_for_project(
            user_id, project, history, new_user_text, attachment=attachment
        )

    async def relay_for_project(
        self,
        user_id: str,
        project: Project,
        history: Sequence[Any],
        new_user_text: Optional[str],
        attachment: Optional[Attachment] = None,
    ) -> str:
        """Relay one turn for a project already resolved with ``get_owned``."""
        turns = coerce_history(history or [])
        if len(turns) + 1 > self.max_history_turns:
            raise ValidationError(
                f"conversation exceeds {self.max_history_turns} turns",
                detail={"max_turns": self.max_history_turns, "received": len(turns) + 1},
            )
        text = new_user_text or ""
        if not text.strip() and attachment is None:
            raise ValidationError("message text or a file is required")

        extracted: Optional[ExtractedAttachment] = None
        if attachment is not None:
            extracted = await read_attachment(
                attachment,
                max_chars=self.max_attachment_chars,
                timeout=self.attachment_timeout,
            )
        messages = build_messages(
            project.system_prompt, turns, render_user_content(text, extracted)
        )

        log_ctx = {
            "user_id": user_id,
            "project_id": project.id,
            "history_turns": len(turns),
            "has_attachment": attachment is not None,
        }
        try:
            completion = await asyncio.wait_for(
                self.gateway.complete(messages), self.upstream_timeout
            )
        except (asyncio.TimeoutError, GatewayTimeoutError) as exc:
            logger.error(
                "upstream_timeout",
                timeout=self.upstream_timeout,
                error_type=type(exc).__name__,
                **log_ctx,
            )
            raise UpstreamTimeoutError(UPSTREAM_TIMEOUT_MESSAGE) from exc
        except GatewayError as exc:
            logger.error(
                "upstream_failed",
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
                error=sanitize_error_message(str(exc)),
                **log_ctx,
            )
            raise UpstreamError(UPSTREAM_FAILED_MESSAGE) from exc

        logger.info(
            "relay_completed",
            model=completion.model,
            reply_chars=len(completion.text),
            **log_ctx,
        )
        return completion.text
