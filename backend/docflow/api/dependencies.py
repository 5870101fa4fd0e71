"""
Composed FastAPI Dependencies

Route handlers receive the ServiceContainer (built once in the app lifespan)
and the request ID through these aliases, never by importing globals.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from docflow.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_request_id(request: Request) -> str | None:
    return request.headers.get("X-Request-ID")


Container = Annotated[ServiceContainer, Depends(get_container)]
RequestId = Annotated[str | None, Depends(get_request_id)]
