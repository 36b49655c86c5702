"""Mapping of forkmesh exceptions to HTTP errors."""
from __future__ import annotations

from fastapi import HTTPException, status

from forkmesh.core.errors import (
    AgentNotReadyError,
    ForkProviderError,
    InvalidTransitionError,
    NotFoundError,
    SyncJobConflictError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(exc, (AgentNotReadyError, InvalidTransitionError, SyncJobConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, ForkProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
