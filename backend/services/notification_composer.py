"""
PaySys Approvals - Notification Composer

Pure mapping from a persisted transition to the notifications it triggers.
No I/O happens here; the dispatcher delivers whatever this returns.

Targets:
- "role:<role>"     everyone holding the role (push server fans out)
- "user:<username>" a single user, usually the requester

Chat channels only receive a notification when NOTIFY_CHAT_TARGETS maps the
target (or the bare role name) to a chat id for that channel, e.g.
    {"telegram": {"ceo": "123456"}, "whatsapp": {"role:financial": "98912..."}}
"""

import os
import json
import logging
from enum import Enum
from dataclasses import dataclass, asdict
from typing import Optional, Dict, List, Any

from services.workflow_registry import (
    WorkflowRegistry, DocType, Role, WorkflowStatus, normalize_doc_type
)

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    """Delivery channels."""
    PUSH = "push"
    TELEGRAM = "telegram"     # chat bot A
    WHATSAPP = "whatsapp"     # chat bot B


@dataclass(frozen=True)
class Notification:
    """One message for one target on one channel."""
    channel: str
    target: str
    message: str
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_chat_targets() -> Dict[str, Dict[str, str]]:
    raw = os.environ.get("NOTIFY_CHAT_TARGETS", "")
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning("Ignoring invalid NOTIFY_CHAT_TARGETS: %s", str(e))
        return {}
    return parsed if isinstance(parsed, dict) else {}


DEFAULT_CHAT_TARGETS = _load_chat_targets()

DOC_TYPE_LABELS = {
    DocType.PAYMENT_ORDER.value: "Payment order",
    DocType.EXIT_PERMIT.value: "Exit permit",
    DocType.SECURITY_LOG.value: "Security log",
    DocType.SECURITY_DELAY.value: "Personnel delay",
    DocType.SECURITY_INCIDENT.value: "Security incident",
    DocType.WAREHOUSE_DISPATCH.value: "Dispatch note",
}

# Who hears about a final approval besides the requester
FINAL_APPROVAL_ROLES = {
    DocType.PAYMENT_ORDER.value: [Role.FINANCIAL.value],
    DocType.WAREHOUSE_DISPATCH.value: [Role.WAREHOUSE_KEEPER.value],
}


def _label(doc_type: str, document: Dict[str, Any]) -> str:
    number = document.get("number") or document.get("id")
    return f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} #{number}"


def _pretty(status: Optional[str]) -> str:
    return (status or "-").replace("_", " ")


def _requester(document: Dict[str, Any]) -> Optional[str]:
    return document.get("requester") or document.get("created_by") or document.get("registrant")


def _role_targets(roles) -> List[str]:
    return [f"role:{r}" for r in sorted(roles)]


def _fan_out(
    targets: List[str],
    title: str,
    message: str,
    chat_targets: Dict[str, Dict[str, str]]
) -> List[Notification]:
    notifications = []
    for target in targets:
        notifications.append(Notification(Channel.PUSH.value, target, message, title))
        bare = target.split(":", 1)[-1]
        for channel in (Channel.TELEGRAM.value, Channel.WHATSAPP.value):
            mapping = chat_targets.get(channel) or {}
            chat_id = mapping.get(target) or mapping.get(bare)
            if chat_id:
                notifications.append(Notification(channel, str(chat_id), f"{title}\n{message}", title))
    return notifications


def compose_notifications(
    doc_type,
    old_status: Optional[str],
    new_status: str,
    document: Dict[str, Any],
    chat_targets: Optional[Dict[str, Dict[str, str]]] = None
) -> List[Notification]:
    """
    Map (doc_type, old_status, new_status, document) to notifications.

    old_status None means the document was just created. A move back to the
    initial state is an edit demotion. Unchanged status yields nothing.
    """
    doc_type = normalize_doc_type(doc_type)
    if old_status == new_status or not WorkflowRegistry.has_type(doc_type):
        return []

    chat_targets = DEFAULT_CHAT_TARGETS if chat_targets is None else chat_targets
    definition = WorkflowRegistry.get_definition(doc_type)
    label = _label(doc_type, document)
    requester = _requester(document)
    targets: List[str] = []

    if new_status == WorkflowStatus.REJECTED.value:
        reason = (document.get("rejection") or {}).get("reason") or "-"
        title = f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} rejected"
        message = f"{label} was rejected. Reason: {reason}"
        if requester:
            targets.append(f"user:{requester}")

    elif new_status == definition.final_state:
        title = f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} approved"
        message = f"{label} reached final status: {_pretty(new_status)}."
        targets.extend(_role_targets(FINAL_APPROVAL_ROLES.get(doc_type, [])))
        if requester:
            targets.append(f"user:{requester}")

    else:
        step = WorkflowRegistry.step(doc_type, new_status)
        if step is None or step.batched:
            return []
        if old_status is None:
            title = f"New {DOC_TYPE_LABELS.get(doc_type, doc_type).lower()}"
            message = f"{label} awaits your approval ({_pretty(new_status)})."
        elif WorkflowRegistry.position(doc_type, new_status) < WorkflowRegistry.position(doc_type, old_status):
            title = f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} edited"
            message = f"{label} was edited and returned to {_pretty(new_status)} for re-approval."
        else:
            title = f"{DOC_TYPE_LABELS.get(doc_type, doc_type)} awaiting approval"
            message = f"{label} passed {_pretty(old_status)} and awaits your approval ({_pretty(new_status)})."
        targets.extend(_role_targets(step.required_roles))

    return _fan_out(targets, title, message, chat_targets)
