"""
PaySys Approvals - Transition Executor

Applies approve / reject / edit and the daily security batch operations to
documents held in a DocumentStore, using the chains in workflow_registry.

Consistency model:
- every read-modify-write runs under a per-document lock and ends in a
  compare-and-swap on the document version; a lost race re-reads and
  re-applies, up to WORKFLOW_MAX_ATTEMPTS, then raises ConflictError
- day-level operations take the day lock before any document lock
- notifications are composed only after a successful write and handed to the
  dispatcher, which delivers them in the background
"""

import os
import copy
import uuid
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Callable, Tuple

from dateutil import parser as date_parser, tz

from services.errors import (
    WorkflowError, NotFoundError, AuthorizationError, ValidationError, ConflictError
)
from services.workflow_registry import (
    WorkflowRegistry, WorkflowStep, DocType, WorkflowStatus, SECURITY_BATCH_TYPES,
    APPROVER_FIELDS, normalize_role, normalize_doc_type
)
from services.document_store import DocumentStore, SECURITY_DAYS_COLLECTION, COUNTERS_COLLECTION
from services.locks import LockManager
from services.notification_composer import Notification, compose_notifications

logger = logging.getLogger(__name__)

# Configuration
WORKFLOW_MAX_ATTEMPTS = int(os.environ.get("WORKFLOW_MAX_ATTEMPTS", "5"))
WORKFLOW_RETRY_DELAY = float(os.environ.get("WORKFLOW_RETRY_DELAY", "0.02"))  # seconds
NUMBER_SEQUENCE_START = int(os.environ.get("NUMBER_SEQUENCE_START", "1000"))
BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "UTC")  # IANA name; decides which day a record falls on
BUSINESS_TZ = tz.gettz(BUSINESS_TIMEZONE) or timezone.utc

# Keys owned by the engine; an edit payload may not touch them
ENGINE_FIELDS = frozenset({
    "id", "doc_type", "status", "number", "day", "version",
    "approval_stamps", "rejection", "workflow_history",
    "created_at", "updated_at",
}) | APPROVER_FIELDS

# Types a bare "approve 1001" from a chat bot may refer to
GENERIC_REFERENCE_TYPES = (DocType.PAYMENT_ORDER.value, DocType.EXIT_PERMIT.value)


class WorkflowEvent(str, Enum):
    """Events recorded in workflow_history."""
    CREATED = "created"
    APPROVED = "approved"
    BATCH_APPROVED = "batch_approved"
    REJECTED = "rejected"
    EDITED = "edited"
    DEMOTED = "demoted"


class BatchLevel(str, Enum):
    """Daily batch sign-off levels for security logs and delays."""
    SUPERVISOR = "supervisor"
    FACTORY = "factory"
    CEO = "ceo"


# State a document must be in for a batch level to move it
BATCH_SOURCE_STATE = {
    BatchLevel.SUPERVISOR: WorkflowStatus.SUPERVISOR_CHECKED.value,
    BatchLevel.FACTORY: WorkflowStatus.FACTORY_CHECKED.value,
    BatchLevel.CEO: WorkflowStatus.PENDING_CEO.value,
}

# Day record flag per (document type, level)
DAY_FLAGS = {
    DocType.SECURITY_LOG.value: {
        BatchLevel.FACTORY: "factory_daily_approved",
        BatchLevel.CEO: "ceo_daily_approved",
    },
    DocType.SECURITY_DELAY.value: {
        BatchLevel.SUPERVISOR: "delay_supervisor_approved",
        BatchLevel.FACTORY: "delay_factory_approved",
        BatchLevel.CEO: "delay_ceo_approved",
    },
}

ALL_DAY_FLAGS = (
    "factory_daily_approved",
    "ceo_daily_approved",
    "delay_supervisor_approved",
    "delay_factory_approved",
    "delay_ceo_approved",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _local_now() -> str:
    return datetime.now(BUSINESS_TZ).isoformat()


def day_of(value) -> str:
    """
    Calendar day (YYYY-MM-DD) of an ISO date or datetime string.

    Values carrying an offset are read in BUSINESS_TZ; naive values and bare
    dates are taken as already local.
    """
    if not isinstance(value, datetime):
        try:
            value = date_parser.isoparse(str(value))
        except (ValueError, OverflowError) as e:
            raise ValidationError(f"Invalid date: {value!r}", {"date": value}) from e
    if value.tzinfo is not None:
        value = value.astimezone(BUSINESS_TZ)
    return value.date().isoformat()


# =============================================================================
# RESULT TYPES
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single entry in the workflow history."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        event: str,
        actor: str = "system",
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ):
        self.timestamp = _now()
        self.from_status = from_status
        self.to_status = to_status
        self.event = event.value if isinstance(event, WorkflowEvent) else event
        self.actor = actor
        self.reason = reason
        self.metadata = metadata or {}

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event": self.event,
            "actor": self.actor,
            "reason": self.reason,
            "metadata": self.metadata
        }


@dataclass
class TransitionResult:
    """Outcome of approve / reject / edit."""
    document: Dict[str, Any]
    previous_status: Optional[str]
    changed: bool
    already_terminal: bool = False
    noop_reason: Optional[str] = None
    notifications: List[Notification] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.document.get("status")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "document": self.document,
            "previous_status": self.previous_status,
            "new_status": self.status,
            "changed": self.changed,
            "already_terminal": self.already_terminal,
            "noop_reason": self.noop_reason,
            "notifications": [n.to_dict() for n in self.notifications],
        }


@dataclass
class BatchResult:
    """Outcome of a daily batch submission."""
    day: str
    level: str
    moved: List[Dict[str, Any]]
    flags_set: Dict[str, bool]
    day_record: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "day": self.day,
            "level": self.level,
            "moved_count": len(self.moved),
            "moved": self.moved,
            "flags_set": self.flags_set,
            "day_record": self.day_record,
        }


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

class TransitionExecutor:
    """
    The approval engine.

    Usage:
        executor = TransitionExecutor(store, LockManager(), dispatcher)
        doc = await executor.create_document("PAYMENT_ORDER", "sara", {"payee": "Acme", "total_amount": 5000})
        result = await executor.approve("PAYMENT_ORDER", doc["id"], "financial", "reza")
    """

    def __init__(
        self,
        store: DocumentStore,
        locks: LockManager = None,
        dispatcher=None,
        max_attempts: int = None,
        retry_delay: float = None,
        chat_targets: Optional[Dict[str, Dict[str, str]]] = None
    ):
        self.store = store
        self.locks = locks or LockManager()
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts or WORKFLOW_MAX_ATTEMPTS
        self.retry_delay = WORKFLOW_RETRY_DELAY if retry_delay is None else retry_delay
        self.chat_targets = chat_targets

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _doc_type(doc_type) -> str:
        key = normalize_doc_type(doc_type)
        if not WorkflowRegistry.has_type(key):
            raise NotFoundError(f"Unknown document type '{doc_type}'", {"doc_type": doc_type})
        return key

    @staticmethod
    def _check_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        payload = payload or {}
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be an object")
        locked = sorted(k for k in payload if k in ENGINE_FIELDS or k.startswith("_"))
        if locked:
            raise ValidationError(
                f"Fields managed by the workflow engine cannot be set: {', '.join(locked)}",
                {"fields": locked}
            )
        return payload

    @staticmethod
    def _history(doc: Dict, entry: WorkflowHistoryEntry):
        doc.setdefault("workflow_history", []).append(entry.to_dict())

    @staticmethod
    def _advance(doc: Dict, step: WorkflowStep, next_state: str, actor_role: str, actor_name: str, event: WorkflowEvent):
        """Stamp the step being left and move to next_state."""
        doc.setdefault("approval_stamps", []).append({
            "role": normalize_role(actor_role),
            "actor_name": actor_name,
            "status": step.state,
            "timestamp": _now(),
        })
        if step.approver_field:
            doc[step.approver_field] = actor_name
        TransitionExecutor._history(doc, WorkflowHistoryEntry(
            from_status=step.state, to_status=next_state, event=event,
            actor=actor_name, metadata={"role": normalize_role(actor_role)}
        ))
        doc["status"] = next_state

    @staticmethod
    def _demote(doc: Dict, doc_type: str, actor_name: str, reason: str):
        """Send a document back to the first pending state, dropping its sign-offs."""
        initial = WorkflowRegistry.initial_state(doc_type)
        previous = doc.get("status")
        doc["approval_stamps"] = []
        for approver_field in APPROVER_FIELDS:
            doc.pop(approver_field, None)
        TransitionExecutor._history(doc, WorkflowHistoryEntry(
            from_status=previous, to_status=initial, event=WorkflowEvent.DEMOTED,
            actor=actor_name, reason=reason
        ))
        doc["status"] = initial

    def _notify(self, doc_type: str, old_status: Optional[str], document: Dict[str, Any]) -> List[Notification]:
        notifications = compose_notifications(
            doc_type, old_status, document.get("status"), document, chat_targets=self.chat_targets
        )
        if notifications and self.dispatcher is not None:
            self.dispatcher.dispatch(notifications)
        return notifications

    async def _mutate(
        self,
        collection: str,
        doc_id: str,
        mutator: Callable[[Dict[str, Any], int], Optional[Dict[str, Any]]]
    ) -> Tuple[Dict[str, Any], Dict[str, Any], bool]:
        """
        Optimistic read-modify-write.

        ``mutator`` receives a private copy of the stored document and returns
        the new document, or None for a no-op. It may raise WorkflowError.

        Returns (before, after, changed).
        """
        for attempt in range(1, self.max_attempts + 1):
            current = await self.store.get(collection, doc_id)
            updated = mutator(copy.deepcopy(current), attempt)
            if updated is None:
                return current, current, False

            expected_version = current.get("version", 0)
            updated["version"] = expected_version + 1
            updated["updated_at"] = _now()
            if await self.store.compare_and_swap(collection, doc_id, expected_version, updated):
                return current, updated, True

            logger.warning(
                "Version conflict: %s/%s@%d, attempt %d/%d",
                collection, doc_id, expected_version, attempt, self.max_attempts
            )
            await asyncio.sleep(self.retry_delay * attempt)

        raise ConflictError(
            f"Document {collection}/{doc_id} kept changing; gave up after {self.max_attempts} attempts",
            {"doc_type": collection, "id": doc_id, "attempts": self.max_attempts}
        )

    # ------------------------------------------------------------------ reads

    async def get_document(self, doc_type, doc_id: str) -> Dict[str, Any]:
        return await self.store.get(self._doc_type(doc_type), doc_id)

    async def list_documents(self, doc_type, status: str = None, include_terminal: bool = True) -> List[Dict[str, Any]]:
        key = self._doc_type(doc_type)
        docs = await self.store.list(key, {"status": status} if status else None)
        if not include_terminal:
            docs = [d for d in docs if not WorkflowRegistry.is_terminal(key, d.get("status"))]
        return sorted(docs, key=lambda d: d.get("created_at") or "", reverse=True)

    async def resolve_reference(self, reference: str, doc_type=None) -> Dict[str, Any]:
        """
        Find a document by id or business number.

        Without a type, payment orders and exit permits are both searched and
        a reference matching in both is rejected as ambiguous.
        """
        reference = str(reference).strip()
        types = [self._doc_type(doc_type)] if doc_type else list(GENERIC_REFERENCE_TYPES)
        matches: List[Dict[str, Any]] = []
        for key in types:
            try:
                matches.append(await self.store.get(key, reference))
                continue
            except NotFoundError:
                pass
            if reference.isdigit():
                matches.extend(await self.store.list(key, {"number": int(reference)}))

        if not matches:
            raise NotFoundError(f"No document matches '{reference}'", {"reference": reference, "doc_types": types})
        if len(matches) > 1:
            found = sorted({m.get("doc_type") for m in matches})
            raise ValidationError(
                f"Reference '{reference}' is ambiguous ({', '.join(found)}); specify the document type",
                {"reference": reference, "doc_types": found}
            )
        return matches[0]

    # ------------------------------------------------------------------ create

    async def _allocate_number(self, doc_type: str) -> int:
        async with self.locks.document_lock(COUNTERS_COLLECTION, doc_type):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    counter = await self.store.get(COUNTERS_COLLECTION, doc_type)
                except NotFoundError:
                    counter = {"id": doc_type, "value": NUMBER_SEQUENCE_START, "version": 0}

                value = counter["value"] + 1
                updated = {"id": doc_type, "value": value, "version": counter["version"] + 1}
                if counter["version"] == 0:
                    ok = await self.store.insert(COUNTERS_COLLECTION, updated)
                else:
                    ok = await self.store.compare_and_swap(COUNTERS_COLLECTION, doc_type, counter["version"], updated)
                if ok:
                    return value
                await asyncio.sleep(self.retry_delay * attempt)
        raise ConflictError(f"Could not allocate a number for {doc_type}", {"doc_type": doc_type})

    async def create_document(self, doc_type, actor_name: str, payload: Dict[str, Any] = None) -> Dict[str, Any]:
        """Create a document in the initial state of its chain."""
        key = self._doc_type(doc_type)
        payload = self._check_payload(payload)
        now = _now()
        initial = WorkflowRegistry.initial_state(key)

        document = dict(payload)
        document.setdefault("requester", actor_name)
        if key in SECURITY_BATCH_TYPES or key == DocType.SECURITY_INCIDENT.value:
            document.setdefault("date", _local_now())
            document["day"] = day_of(document["date"])
        document.update({
            "id": str(uuid.uuid4()),
            "doc_type": key,
            "number": await self._allocate_number(key),
            "status": initial,
            "approval_stamps": [],
            "workflow_history": [WorkflowHistoryEntry(
                from_status=None, to_status=initial, event=WorkflowEvent.CREATED, actor=actor_name
            ).to_dict()],
            "created_at": now,
            "updated_at": now,
            "version": 1,
        })

        if not await self.store.insert(key, document):
            raise ConflictError(f"Document id collision for {key}", {"doc_type": key, "id": document["id"]})

        logger.info("Document created: type=%s, id=%s, number=%s, by=%s", key, document["id"], document["number"], actor_name)
        self._notify(key, None, document)
        return document

    # ------------------------------------------------------------------ approve / reject

    async def approve(
        self,
        doc_type,
        doc_id: str,
        actor_role: str,
        actor_name: str,
        payload: Dict[str, Any] = None,
        expected_status: str = None
    ) -> TransitionResult:
        """
        Advance a document one step.

        A terminal document is returned unchanged. If the status moved on since
        the caller looked (expected_status) or since the first read of a
        retried attempt, the call is a no-op as well: the step it meant to sign
        has already been signed.
        """
        key = self._doc_type(doc_type)
        payload = payload or {}
        observed = {"status": expected_status, "noop": None}

        def mutator(doc: Dict[str, Any], attempt: int) -> Optional[Dict[str, Any]]:
            status = doc.get("status")
            if WorkflowRegistry.is_terminal(key, status):
                observed["noop"] = "already_terminal"
                return None
            if observed["status"] is None:
                observed["status"] = status
            elif status != observed["status"]:
                observed["noop"] = "already_advanced"
                return None

            step = WorkflowRegistry.step(key, status)
            if step is None:
                raise ValidationError(f"Document is in unknown status '{status}'", {"status": status})
            if not WorkflowRegistry.is_authorized(key, status, actor_role):
                raise AuthorizationError(
                    f"Role '{actor_role}' cannot approve {key} in status '{status}'",
                    {"role": actor_role, "status": status, "required_roles": sorted(step.required_roles)}
                )
            if step.batched:
                raise ValidationError(
                    f"Status '{status}' is advanced by the daily batch submission only",
                    {"status": status}
                )
            missing = [f for f in step.required_fields if not payload.get(f)]
            if missing:
                raise ValidationError(
                    f"Missing required fields: {', '.join(missing)}",
                    {"fields": missing, "status": status}
                )

            for required in step.required_fields:
                doc[required] = payload[required]
            self._advance(doc, step, WorkflowRegistry.next_state(key, status), actor_role, actor_name, WorkflowEvent.APPROVED)
            return doc

        async with self.locks.document_lock(key, doc_id):
            before, after, changed = await self._mutate(key, doc_id, mutator)

        if not changed:
            logger.info(
                "Approve no-op: type=%s, id=%s, status=%s, reason=%s, by=%s",
                key, doc_id, before.get("status"), observed["noop"], actor_name
            )
            return TransitionResult(
                document=before,
                previous_status=before.get("status"),
                changed=False,
                already_terminal=observed["noop"] == "already_terminal",
                noop_reason=observed["noop"],
            )

        logger.info(
            "Workflow transition: type=%s, id=%s, %s -> %s (approved by %s/%s)",
            key, doc_id, before.get("status"), after.get("status"), actor_name, normalize_role(actor_role)
        )
        notifications = self._notify(key, before.get("status"), after)
        return TransitionResult(document=after, previous_status=before.get("status"), changed=True, notifications=notifications)

    async def reject(self, doc_type, doc_id: str, actor_role: str, actor_name: str, reason: str) -> TransitionResult:
        """Move a non-terminal document to REJECTED, recording the reason."""
        key = self._doc_type(doc_type)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"field": "reason"})
        reason = reason.strip()
        noop = {"reason": None}

        def mutator(doc: Dict[str, Any], attempt: int) -> Optional[Dict[str, Any]]:
            status = doc.get("status")
            if WorkflowRegistry.is_terminal(key, status):
                noop["reason"] = "already_terminal"
                return None
            step = WorkflowRegistry.step(key, status)
            if step is None:
                raise ValidationError(f"Document is in unknown status '{status}'", {"status": status})
            if not WorkflowRegistry.is_authorized(key, status, actor_role):
                raise AuthorizationError(
                    f"Role '{actor_role}' cannot reject {key} in status '{status}'",
                    {"role": actor_role, "status": status, "required_roles": sorted(step.required_roles)}
                )
            doc["rejection"] = {"actor_name": actor_name, "reason": reason, "timestamp": _now()}
            self._history(doc, WorkflowHistoryEntry(
                from_status=status, to_status=WorkflowStatus.REJECTED.value, event=WorkflowEvent.REJECTED,
                actor=actor_name, reason=reason, metadata={"role": normalize_role(actor_role)}
            ))
            doc["status"] = WorkflowStatus.REJECTED.value
            return doc

        async with self.locks.document_lock(key, doc_id):
            before, after, changed = await self._mutate(key, doc_id, mutator)

        if not changed:
            logger.info("Reject no-op: type=%s, id=%s, status=%s", key, doc_id, before.get("status"))
            return TransitionResult(
                document=before, previous_status=before.get("status"), changed=False,
                already_terminal=True, noop_reason=noop["reason"]
            )

        logger.info(
            "Workflow transition: type=%s, id=%s, %s -> rejected (by %s, reason=%s)",
            key, doc_id, before.get("status"), actor_name, reason
        )
        notifications = self._notify(key, before.get("status"), after)
        return TransitionResult(document=after, previous_status=before.get("status"), changed=True, notifications=notifications)

    # ------------------------------------------------------------------ edit

    async def edit(self, doc_type, doc_id: str, actor_name: str, payload: Dict[str, Any]) -> TransitionResult:
        """
        Update type-specific fields.

        Security logs and delays may be edited in any state but REJECTED; an
        edit past the first pending state sends the document back to it and
        invalidates its day's batch sign-off. Other types are editable only
        while still in their initial state.
        """
        key = self._doc_type(doc_type)
        payload = self._check_payload(payload)
        if not payload:
            raise ValidationError("Nothing to edit", {"field": "payload"})
        if key in SECURITY_BATCH_TYPES:
            return await self._edit_security(key, doc_id, actor_name, payload)

        initial = WorkflowRegistry.initial_state(key)
        new_day = None
        if key == DocType.SECURITY_INCIDENT.value and "date" in payload:
            new_day = day_of(payload["date"])

        def mutator(doc: Dict[str, Any], attempt: int) -> Dict[str, Any]:
            status = doc.get("status")
            if status != initial:
                raise ValidationError(
                    f"{key} can only be edited while '{initial}' (current: '{status}')",
                    {"status": status}
                )
            doc.update(payload)
            if new_day:
                doc["day"] = new_day
            self._history(doc, WorkflowHistoryEntry(
                from_status=status, to_status=status, event=WorkflowEvent.EDITED,
                actor=actor_name, metadata={"fields": sorted(payload)}
            ))
            return doc

        async with self.locks.document_lock(key, doc_id):
            before, after, _ = await self._mutate(key, doc_id, mutator)

        logger.info("Document edited: type=%s, id=%s, fields=%s, by=%s", key, doc_id, sorted(payload), actor_name)
        return TransitionResult(document=after, previous_status=before.get("status"), changed=True)

    async def _edit_security(self, key: str, doc_id: str, actor_name: str, payload: Dict[str, Any]) -> TransitionResult:
        new_day = day_of(payload["date"]) if "date" in payload else None

        for attempt in range(1, self.max_attempts + 1):
            snapshot = await self.store.get(key, doc_id)
            days = {snapshot.get("day") or day_of(snapshot.get("date") or snapshot.get("created_at"))}
            if new_day:
                days.add(new_day)

            async with self.locks.day_locks(days):
                def mutator(doc: Dict[str, Any], attempt: int) -> Dict[str, Any]:
                    status = doc.get("status")
                    if status == WorkflowStatus.REJECTED.value:
                        raise ValidationError("Rejected documents cannot be edited", {"status": status})
                    doc.update(payload)
                    if new_day:
                        doc["day"] = new_day
                    if WorkflowRegistry.position(key, status) > 0:
                        self._demote(doc, key, actor_name, reason="edited after approval")
                    else:
                        self._history(doc, WorkflowHistoryEntry(
                            from_status=status, to_status=status, event=WorkflowEvent.EDITED,
                            actor=actor_name, metadata={"fields": sorted(payload)}
                        ))
                    return doc

                async with self.locks.document_lock(key, doc_id):
                    current = await self.store.get(key, doc_id)
                    if current.get("day") not in days and current.get("day") is not None:
                        # moved to another day while we waited for the day lock
                        continue
                    before, after, _ = await self._mutate(key, doc_id, mutator)

                demoted = await self._invalidate_days(sorted(days), actor_name, exclude=(key, doc_id))

            logger.info(
                "Security document edited: type=%s, id=%s, %s -> %s, day(s)=%s, cascade=%d, by=%s",
                key, doc_id, before.get("status"), after.get("status"), sorted(days), len(demoted), actor_name
            )
            notifications = []
            if before.get("status") != after.get("status"):
                notifications = self._notify(key, before.get("status"), after)
            for member_type, old_status, member in demoted:
                self._notify(member_type, old_status, member)
            return TransitionResult(
                document=after, previous_status=before.get("status"), changed=True, notifications=notifications
            )

        raise ConflictError(
            f"Document {key}/{doc_id} kept moving between days; gave up",
            {"doc_type": key, "id": doc_id}
        )

    # ------------------------------------------------------------------ security days

    async def get_day(self, date) -> Dict[str, Any]:
        """Day record with all flags; unsaved days read as all-false."""
        day = day_of(date)
        try:
            record = await self.store.get(SECURITY_DAYS_COLLECTION, day)
        except NotFoundError:
            record = {"id": day, "version": 0}
        for flag in ALL_DAY_FLAGS:
            record.setdefault(flag, False)
        return record

    async def _update_day(self, day: str, changes: Dict[str, bool]) -> Dict[str, Any]:
        """CAS update of a day record. Caller holds the day lock."""
        for attempt in range(1, self.max_attempts + 1):
            record = await self.get_day(day)
            updated = {**record, **changes, "version": record["version"] + 1, "updated_at": _now()}
            if record["version"] == 0:
                ok = await self.store.insert(SECURITY_DAYS_COLLECTION, updated)
            else:
                ok = await self.store.compare_and_swap(SECURITY_DAYS_COLLECTION, day, record["version"], updated)
            if ok:
                return updated
            logger.warning("Day record conflict: day=%s, attempt %d/%d", day, attempt, self.max_attempts)
            await asyncio.sleep(self.retry_delay * attempt)
        raise ConflictError(f"Day record {day} kept changing; gave up", {"day": day})

    async def _invalidate_days(
        self,
        days: List[str],
        actor_name: str,
        exclude: Tuple[str, str] = None
    ) -> List[Tuple[str, str, Dict[str, Any]]]:
        """
        Clear every flag of each day that has any set, and demote the day's
        logs/delays that reached a level whose flag was set. Caller holds the
        day locks. Returns (doc_type, old_status, document) per demotion.
        """
        demoted = []
        for day in days:
            record = await self.get_day(day)
            set_flags = [f for f in ALL_DAY_FLAGS if record.get(f)]
            if not set_flags:
                continue

            for doc_type, flags in DAY_FLAGS.items():
                thresholds = [
                    WorkflowRegistry.position(doc_type, WorkflowRegistry.next_state(doc_type, BATCH_SOURCE_STATE[level]))
                    for level, flag in flags.items() if record.get(flag)
                ]
                if not thresholds:
                    continue
                threshold = min(thresholds)

                for member in await self.store.list(doc_type, {"day": day}):
                    if exclude == (doc_type, member["id"]):
                        continue
                    if WorkflowRegistry.position(doc_type, member.get("status")) < threshold:
                        continue

                    def mutator(doc: Dict[str, Any], attempt: int, doc_type=doc_type, threshold=threshold):
                        if WorkflowRegistry.position(doc_type, doc.get("status")) < threshold:
                            return None
                        self._demote(doc, doc_type, actor_name, reason=f"day {day} batch sign-off invalidated")
                        return doc

                    async with self.locks.document_lock(doc_type, member["id"]):
                        before, after, changed = await self._mutate(doc_type, member["id"], mutator)
                    if changed:
                        demoted.append((doc_type, before.get("status"), after))

            await self._update_day(day, {flag: False for flag in ALL_DAY_FLAGS})
            logger.info("Day sign-off cleared: day=%s, flags=%s, demoted=%d", day, set_flags, len(demoted))
        return demoted

    async def submit_batch(
        self,
        doc_type,
        date,
        level: str,
        actor_role: str,
        actor_name: str
    ) -> BatchResult:
        """
        Move every log/delay of a day waiting at ``level`` forward one step and
        set the day flag for each family that had something to move.

        doc_type None covers both security logs and delays.
        """
        try:
            batch_level = BatchLevel((level.value if isinstance(level, BatchLevel) else str(level)).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown batch level '{level}'",
                {"level": level, "valid": [b.value for b in BatchLevel]}
            )
        day = day_of(date)

        if doc_type:
            key = self._doc_type(doc_type)
            if key not in SECURITY_BATCH_TYPES:
                raise ValidationError(f"Daily batch submission does not apply to {key}", {"doc_type": key})
            candidates = [key]
        else:
            candidates = [t.value for t in SECURITY_BATCH_TYPES]

        source_state = BATCH_SOURCE_STATE[batch_level]
        types = [t for t in candidates if WorkflowRegistry.step(t, source_state) is not None]
        if not types:
            raise ValidationError(
                f"No {', '.join(candidates)} chain has a '{batch_level.value}' batch level",
                {"level": batch_level.value}
            )
        for t in types:
            if not WorkflowRegistry.is_authorized(t, source_state, actor_role):
                raise AuthorizationError(
                    f"Role '{actor_role}' cannot submit the {batch_level.value} batch",
                    {"role": actor_role, "level": batch_level.value, "doc_type": t}
                )

        moved: List[Dict[str, Any]] = []
        flags: Dict[str, bool] = {}
        async with self.locks.day_lock(day):
            try:
                for t in types:
                    for member in await self.store.list(t, {"day": day, "status": source_state}):
                        def mutator(doc: Dict[str, Any], attempt: int, t=t):
                            if doc.get("status") != source_state:
                                return None
                            step = WorkflowRegistry.step(t, source_state)
                            self._advance(
                                doc, step, WorkflowRegistry.next_state(t, source_state),
                                actor_role, actor_name, WorkflowEvent.BATCH_APPROVED
                            )
                            return doc

                        async with self.locks.document_lock(t, member["id"]):
                            before, after, changed = await self._mutate(t, member["id"], mutator)
                        if changed:
                            flags[DAY_FLAGS[t][batch_level]] = True
                            moved.append({"doc_type": t, "id": after["id"], "from_status": before["status"], "to_status": after["status"]})
                            self._notify(t, before.get("status"), after)
            except WorkflowError as e:
                logger.error(
                    "Batch interrupted: day=%s, level=%s, moved=%d, error=%s",
                    day, batch_level.value, len(moved), e.message
                )
                raise
            finally:
                # A batch cut short still flags the families it already moved
                if flags:
                    day_record = await self._update_day(day, flags)
            if not flags:
                day_record = await self.get_day(day)

        logger.info(
            "Batch submitted: day=%s, level=%s, moved=%d, flags=%s, by=%s",
            day, batch_level.value, len(moved), sorted(flags), actor_name
        )
        return BatchResult(day=day, level=batch_level.value, moved=moved, flags_set=flags, day_record=day_record)

    async def submit_supervisor_batch(self, date, actor_role: str, actor_name: str, doc_type=None) -> BatchResult:
        return await self.submit_batch(doc_type, date, BatchLevel.SUPERVISOR, actor_role, actor_name)

    async def submit_factory_batch(self, date, actor_role: str, actor_name: str, doc_type=None) -> BatchResult:
        return await self.submit_batch(doc_type, date, BatchLevel.FACTORY, actor_role, actor_name)

    async def archive_day(self, date, actor_role: str, actor_name: str, doc_type=None) -> BatchResult:
        return await self.submit_batch(doc_type, date, BatchLevel.CEO, actor_role, actor_name)
