"""
PaySys Approvals - Workflows Router

Approve / reject / edit, daily batch submission, queues and registry lookups.
Engine errors propagate to the WorkflowError handler registered by the app.
"""

from fastapi import APIRouter, Query
from typing import Optional, Dict, Any
from pydantic import BaseModel
import logging

from services.errors import NotFoundError
from services.workflow_registry import WorkflowRegistry, normalize_doc_type, normalize_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Transition executor - set by main app
executor = None

def set_dependencies(transition_executor):
    global executor
    executor = transition_executor


# ==================== MODELS ====================

class ApproveRequest(BaseModel):
    doc_type: str
    id: str
    actor_role: str
    actor_name: str
    payload: Optional[Dict[str, Any]] = None
    expected_status: Optional[str] = None


class RejectRequest(BaseModel):
    doc_type: str
    id: str
    actor_role: str
    actor_name: str
    reason: str


class EditRequest(BaseModel):
    doc_type: str
    id: str
    actor_name: str
    payload: Dict[str, Any]


class BatchRequest(BaseModel):
    doc_type: Optional[str] = None
    date: str
    level: str
    actor_role: str
    actor_name: str


# ==================== TRANSITIONS ====================

@router.post("/approve")
async def approve_document(req: ApproveRequest):
    """Advance a document one step in its chain."""
    result = await executor.approve(
        req.doc_type, req.id, req.actor_role, req.actor_name,
        payload=req.payload, expected_status=req.expected_status
    )
    return result.to_dict()


@router.post("/reject")
async def reject_document(req: RejectRequest):
    """Reject a document with a reason."""
    result = await executor.reject(req.doc_type, req.id, req.actor_role, req.actor_name, req.reason)
    return result.to_dict()


@router.post("/edit")
async def edit_document(req: EditRequest):
    """
    Edit document fields.

    Editing an approved security log or delay sends it back to the supervisor
    and clears its day's batch sign-off.
    """
    result = await executor.edit(req.doc_type, req.id, req.actor_name, req.payload)
    return result.to_dict()


@router.post("/submit-batch")
async def submit_batch(req: BatchRequest):
    """
    Daily batch sign-off of security logs and delays.

    Levels:
    - supervisor: supervisor_checked delays -> pending_factory
    - factory: factory_checked logs/delays -> pending_ceo
    - ceo: pending_ceo logs/delays -> archived
    """
    result = await executor.submit_batch(req.doc_type, req.date, req.level, req.actor_role, req.actor_name)
    return result.to_dict()


# ==================== LOOKUPS ====================

@router.get("/registry")
async def list_registry():
    """All document types and their chains."""
    return {
        "doc_types": [WorkflowRegistry.describe(t) for t in WorkflowRegistry.get_all_doc_types()]
    }


@router.get("/registry/{doc_type}")
async def get_registry(doc_type: str):
    """Chain, roles and terminal states for one document type."""
    key = normalize_doc_type(doc_type)
    if not WorkflowRegistry.has_type(key):
        raise NotFoundError(f"Unknown document type '{doc_type}'", {"doc_type": doc_type})
    return WorkflowRegistry.describe(key)


@router.get("/security-days/{date}")
async def get_security_day(date: str):
    """Batch sign-off flags of a calendar day."""
    return await executor.get_day(date)


@router.get("/queue")
async def get_workflow_queue(
    role: str = Query(...),
    doc_type: Optional[str] = Query(None)
):
    """
    Documents the role may act on in their current state. Batched states are
    listed too; they are signed off through submit-batch.
    """
    types = [doc_type] if doc_type else WorkflowRegistry.get_all_doc_types()
    role = normalize_role(role)
    queue = []
    counts = {}
    for key in types:
        for doc in await executor.list_documents(key, include_terminal=False):
            if WorkflowRegistry.is_authorized(doc["doc_type"], doc.get("status"), role):
                queue.append(doc)
                counts[doc["doc_type"]] = counts.get(doc["doc_type"], 0) + 1
    return {"role": role, "documents": queue, "total": len(queue), "by_type": counts}


@router.get("/{doc_type}/{doc_id}/history")
async def get_workflow_history(doc_type: str, doc_id: str):
    """Stamps, rejection and the full workflow history of a document."""
    doc = await executor.get_document(doc_type, doc_id)
    return {
        "id": doc["id"],
        "doc_type": doc.get("doc_type"),
        "number": doc.get("number"),
        "status": doc.get("status"),
        "approval_stamps": doc.get("approval_stamps", []),
        "rejection": doc.get("rejection"),
        "history": doc.get("workflow_history", []),
    }
