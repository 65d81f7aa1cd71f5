"""
PaySys Approvals - Routes Package

Modular API routers for the approval engine.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
import logging

from services.errors import WorkflowError

from .documents import router as documents_router, set_dependencies as set_documents_deps
from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .chat import router as chat_router, set_dependencies as set_chat_deps

logger = logging.getLogger(__name__)


async def workflow_error_handler(request: Request, exc: WorkflowError):
    """Engine errors become {"error", "message", "retryable", "details"} bodies."""
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def set_dependencies(executor):
    """Hand the shared executor to every router."""
    set_documents_deps(executor)
    set_workflows_deps(executor)
    set_chat_deps(executor)


__all__ = [
    'documents_router', 'set_documents_deps',
    'workflows_router', 'set_workflows_deps',
    'chat_router', 'set_chat_deps',
    'workflow_error_handler', 'set_dependencies',
]
