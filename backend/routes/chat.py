"""
PaySys Approvals - Chat Bot Ingress

Commands relayed by the Telegram and WhatsApp bots. A bot sends the parsed
command ("approve 1001", "reject 1001 wrong amount", "status 1001", "report")
and gets back the reply text to post in the chat.

References are business numbers or ids. Without a doc_type, a number is looked
up among payment orders and exit permits; a number matching both is rejected
as ambiguous.
"""

from fastapi import APIRouter
from typing import Optional, Dict, Any
from pydantic import BaseModel
import os
import logging

from services.errors import ValidationError
from services.workflow_engine import GENERIC_REFERENCE_TYPES
from services.notification_composer import Channel, DOC_TYPE_LABELS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

# Transition executor - set by main app
executor = None

def set_dependencies(transition_executor):
    global executor
    executor = transition_executor

BOT_CHANNELS = (Channel.TELEGRAM.value, Channel.WHATSAPP.value)
CHAT_ACTIONS = ("approve", "reject", "status", "report")
CHAT_REPORT_LIMIT = int(os.environ.get("CHAT_REPORT_LIMIT", "20"))  # lines per document type


class ChatCommand(BaseModel):
    action: str
    reference: Optional[str] = None
    doc_type: Optional[str] = None
    actor_role: str
    actor_name: str
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


def _label(doc: Dict[str, Any]) -> str:
    doc_type = doc.get("doc_type")
    return f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} #{doc.get('number') or doc.get('id')}"


def _report_line(doc: Dict[str, Any]) -> str:
    parts = [f"{_label(doc)}: {doc['status'].replace('_', ' ')}"]
    if doc.get("payee"):
        parts.append(str(doc["payee"]))
    if isinstance(doc.get("total_amount"), (int, float)):
        parts.append(f"{doc['total_amount']:,}")
    return " | ".join(parts)


async def _pending_report(doc_type: Optional[str]) -> Dict[str, Any]:
    """Open documents per type, newest first."""
    types = [doc_type] if doc_type else list(GENERIC_REFERENCE_TYPES)
    lines = []
    counts = {}
    for key in types:
        docs = await executor.list_documents(key, include_terminal=False)
        if not docs:
            continue
        counts[docs[0]["doc_type"]] = len(docs)
        lines.extend(_report_line(d) for d in docs[:CHAT_REPORT_LIMIT])
        if len(docs) > CHAT_REPORT_LIMIT:
            lines.append(f"... and {len(docs) - CHAT_REPORT_LIMIT} more")
    if not lines:
        return {"reply": "Nothing is pending.", "result": {"pending": counts}}
    header = f"Pending: {sum(counts.values())}"
    return {"reply": "\n".join([header] + lines), "result": {"pending": counts}}


@router.post("/{channel}/command")
async def chat_command(channel: str, cmd: ChatCommand):
    """Apply a bot command and return the reply text with the engine result."""
    channel = channel.lower()
    if channel not in BOT_CHANNELS:
        raise ValidationError(f"Unknown chat channel '{channel}'", {"channel": channel, "valid": list(BOT_CHANNELS)})
    action = cmd.action.strip().lower()
    if action not in CHAT_ACTIONS:
        raise ValidationError(f"Unknown command '{cmd.action}'", {"action": cmd.action, "valid": list(CHAT_ACTIONS)})

    logger.info("Chat command: channel=%s, action=%s, ref=%s, by=%s", channel, action, cmd.reference, cmd.actor_name)
    if action == "report":
        return await _pending_report(cmd.doc_type)
    if not cmd.reference or not cmd.reference.strip():
        raise ValidationError(f"'{action}' needs a document number or id", {"field": "reference"})

    doc = await executor.resolve_reference(cmd.reference, cmd.doc_type)
    label = _label(doc)

    if action == "status":
        reply = f"{label}: {doc['status'].replace('_', ' ')}"
        return {"reply": reply, "result": {"document": doc}}

    if action == "approve":
        # expected_status makes a repeated tap on the same message a no-op
        result = await executor.approve(
            doc["doc_type"], doc["id"], cmd.actor_role, cmd.actor_name,
            payload=cmd.payload, expected_status=doc["status"]
        )
    else:
        result = await executor.reject(doc["doc_type"], doc["id"], cmd.actor_role, cmd.actor_name, cmd.reason or "")

    if result.changed:
        reply = f"{label}: {result.previous_status.replace('_', ' ')} -> {result.status.replace('_', ' ')}"
    elif result.already_terminal:
        reply = f"{label} is already closed ({result.status.replace('_', ' ')})."
    else:
        reply = f"{label} was already handled; now {result.status.replace('_', ' ')}."
    return {"reply": reply, "result": result.to_dict()}
