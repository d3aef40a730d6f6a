"""
FastAPI Dependencies

Provides dependency injection for database sessions, the process-wide
reconcile worker and trigger dispatcher (created at startup and held on
app.state), and the internal API key guard.

SECURITY NOTES:
- The internal API key is never logged
- Comparison is constant-time
"""

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.config import settings
from segmentation.database import get_db
from segmentation.exceptions import ServiceUnavailableError, UnauthorizedError
from segmentation.services.segmentation.reconcile_worker import ReconcileWorker
from segmentation.services.segmentation.trigger_dispatcher import TriggerDispatcher

logger = logging.getLogger(__name__)


async def verify_internal_api_key(
    x_internal_api_key: Annotated[str | None, Header(alias="X-Internal-Api-Key")] = None,
) -> None:
    """
    Shared-secret guard for service-to-service calls.

    Disabled when INTERNAL_API_KEY is not configured.
    """
    expected = settings.INTERNAL_API_KEY
    if not expected:
        return
    if not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, expected):
        logger.warning("Rejected request with missing or invalid internal API key")
        raise UnauthorizedError()


def get_reconcile_worker(request: Request) -> ReconcileWorker:
    worker = getattr(request.app.state, "reconcile_worker", None)
    if worker is None:
        raise ServiceUnavailableError("Reconcile worker is not initialized")
    return worker


def get_trigger_dispatcher(request: Request) -> TriggerDispatcher:
    dispatcher = getattr(request.app.state, "trigger_dispatcher", None)
    if dispatcher is None:
        raise ServiceUnavailableError("Trigger dispatcher is not initialized")
    return dispatcher


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Worker = Annotated[ReconcileWorker, Depends(get_reconcile_worker)]
Dispatcher = Annotated[TriggerDispatcher, Depends(get_trigger_dispatcher)]
InternalAuth = Depends(verify_internal_api_key)
