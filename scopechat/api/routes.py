from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile

from scopechat.api.schemas import (
    AuthResponse,
    ChatResponse,
    LoginRequest,
    LogoutResponse,
    ProjectCreateRequest,
    ProjectOut,
    RegisterRequest,
    UserOut,
    parse_chat_messages,
)
from scopechat.logging import get_logger
from scopechat.service.attachments import Attachment, safe_filename
from scopechat.service.auth import AuthContext
from scopechat.service.errors import AuthenticationError
from scopechat.service.relay import split_conversation
from scopechat.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and return a bearer token for it.

    Raises:
        400: email already registered (``conflict``) or invalid input
    """
    runtime = get_runtime()
    user, token = await runtime.auth.register(body.email, body.password)
    return AuthResponse(token=token, user=UserOut.from_user(user))


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Raises:
        400: unknown email or wrong password (``invalid_credentials``)
    """
    runtime = get_runtime()
    user, token = await runtime.auth.login(body.email, body.password)
    return AuthResponse(token=token, user=UserOut.from_user(user))


@router.post("/auth/logout", response_model=LogoutResponse, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.revoke(principal)
    return LogoutResponse(revoked=True)


@router.get("/auth/me", response_model=UserOut, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise AuthenticationError("invalid or expired token")
    return UserOut.from_user(user)


@router.get("/projects", response_model=List[ProjectOut], tags=["projects"])
async def list_projects(principal: AuthContext = Depends(get_user)):
    """List the caller's projects, newest first."""
    runtime = get_runtime()
    return [
        ProjectOut.from_project(project)
        for project in runtime.projects.list_for_user(principal.user_id)
    ]


@router.post("/projects", response_model=ProjectOut, status_code=201, tags=["projects"])
async def create_project(
    body: ProjectCreateRequest, principal: AuthContext = Depends(get_user)
):
    """Create a project bound to a system prompt.

    Raises:
        400: name or systemPrompt empty after trimming, or too long
    """
    runtime = get_runtime()
    project = runtime.projects.create(principal.user_id, body.name, body.system_prompt)
    return ProjectOut.from_project(project)


@router.get("/projects/{project_id}", response_model=ProjectOut, tags=["projects"])
async def get_project(project_id: str, principal: AuthContext = Depends(get_user)):
    """Fetch one project.

    Raises:
        404: project missing or owned by another user
    """
    runtime = get_runtime()
    return ProjectOut.from_project(runtime.projects.get_owned(principal.user_id, project_id))


@router.post("/chat", response_model=ChatResponse, tags=["chat"])
async def chat(
    project_id: str = Form(..., alias="projectId", max_length=128),
    messages: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    principal: AuthContext = Depends(get_user),
):
    """Relay one chat turn to the assistant of a project.

    ``messages`` is the JSON-encoded conversation as the client holds it; a
    trailing user turn is the new message. An optional ``file`` is read into
    the new turn and never stored.

    Raises:
        400: malformed messages, too many turns, or nothing to send
        404: project missing or owned by another user
        413: file larger than the configured limit
        500: upstream provider timed out or failed
    """
    runtime = get_runtime()
    # Ownership is resolved before the body is inspected
    project = runtime.projects.get_owned(principal.user_id, project_id)
    history, new_text = split_conversation(parse_chat_messages(messages))

    attachment: Optional[Attachment] = None
    if file is not None and (file.filename or file.size):
        max_bytes = max(1, runtime.settings.max_attachment_bytes)
        contents = await file.read(max_bytes + 1)
        await file.close()
        if len(contents) > max_bytes:
            raise _http_error(
                "validation_error",
                "file too large",
                status_code=413,
                details={"max_bytes": max_bytes},
            )
        attachment = Attachment(
            filename=safe_filename(file.filename),
            content_type=file.content_type or "application/octet-stream",
            data=contents,
        )

    reply = await runtime.relay.relay_for_project(
        principal.user_id,
        project,
        history,
        new_text,
        attachment=attachment,
    )
    return ChatResponse(message=reply)
