"""
PaySys Approvals - Documents Router

Create, list and fetch documents of each workflow type.
"""

from fastapi import APIRouter, Query
from typing import Optional, Dict, Any
from pydantic import BaseModel

router = APIRouter(prefix="/documents", tags=["documents"])

# Transition executor - set by main app
executor = None

def set_dependencies(transition_executor):
    global executor
    executor = transition_executor


# ==================== MODELS ====================

class DocumentCreate(BaseModel):
    actor_name: str
    payload: Dict[str, Any] = {}


# ==================== ENDPOINTS ====================

@router.post("/{doc_type}")
async def create_document(doc_type: str, req: DocumentCreate):
    """Register a new document in the first state of its chain."""
    return await executor.create_document(doc_type, req.actor_name, req.payload)


@router.get("/{doc_type}")
async def list_documents(
    doc_type: str,
    status: Optional[str] = Query(None),
    include_terminal: bool = Query(True),
    skip: int = Query(0),
    limit: int = Query(50)
):
    """List documents of a type, newest first."""
    docs = await executor.list_documents(doc_type, status=status, include_terminal=include_terminal)
    return {"documents": docs[skip:skip + limit], "total": len(docs), "skip": skip, "limit": limit}


@router.get("/{doc_type}/{doc_id}")
async def get_document(doc_type: str, doc_id: str):
    """Get a single document by ID."""
    return await executor.get_document(doc_type, doc_id)
