# API package

from api.app import ColonyAPI
from api.models import (
    ClaimRequest,
    ErrorResponse,
    HealthResponse,
    RunStartRequest,
    TaskCreateRequest,
    TaskListResponse,
    TransitionRequest,
)

__all__ = [
    "ClaimRequest",
    "ColonyAPI",
    "ErrorResponse",
    "HealthResponse",
    "RunStartRequest",
    "TaskCreateRequest",
    "TaskListResponse",
    "TransitionRequest",
]
