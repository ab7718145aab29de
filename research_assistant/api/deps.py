from __future__ import annotations

from uuid import uuid4

from fastapi import Header, HTTPException, Request

from research_assistant.services.container import Container


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_owner_uid(x_user_id: str | None = Header(default=None)) -> str:
    """The owner uid is set by the upstream gateway after authentication."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("x-request-id") or uuid4().hex
        request.state.request_id = request_id
    return request_id
