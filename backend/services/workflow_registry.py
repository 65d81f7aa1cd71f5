"""
PaySys Approvals - Workflow Registry

Single source of truth for the approval chains of every document type.
Each chain is an ordered list of steps; a document sits in one step at a time
and can only move to the next step (approve) or to REJECTED (reject).

Document Types Supported:
- PAYMENT_ORDER: finance -> manager -> CEO
- EXIT_PERMIT: CEO -> factory -> security gate (exit time required)
- SECURITY_LOG: supervisor -> factory (daily batch) -> CEO
- SECURITY_DELAY: supervisor (daily batch) -> factory (daily batch) -> CEO
- SECURITY_INCIDENT: supervisor -> factory -> CEO
- WAREHOUSE_DISPATCH: single CEO/admin sign-off

Adding a document type means registering a new chain here, nothing else.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Tuple, FrozenSet


# =============================================================================
# DOCUMENT TYPES & ROLES
# =============================================================================

class DocType(str, Enum):
    """Document types handled by the approval engine."""
    PAYMENT_ORDER = "PAYMENT_ORDER"
    EXIT_PERMIT = "EXIT_PERMIT"
    SECURITY_LOG = "SECURITY_LOG"
    SECURITY_DELAY = "SECURITY_DELAY"
    SECURITY_INCIDENT = "SECURITY_INCIDENT"
    WAREHOUSE_DISPATCH = "WAREHOUSE_DISPATCH"


class Role(str, Enum):
    """User roles known to the approval gates."""
    ADMIN = "admin"
    CEO = "ceo"
    MANAGER = "manager"
    FINANCIAL = "financial"
    SALES_MANAGER = "sales_manager"
    FACTORY_MANAGER = "factory_manager"
    WAREHOUSE_KEEPER = "warehouse_keeper"
    SECURITY_HEAD = "security_head"
    SECURITY_GUARD = "security_guard"
    USER = "user"


class WorkflowStatus(str, Enum):
    """
    Status values. Shared across document types; each chain uses a subset.
    """
    # Payment order
    PENDING = "pending"
    FINANCE_APPROVED = "finance_approved"
    MANAGER_APPROVED = "manager_approved"
    CEO_APPROVED = "ceo_approved"

    # Exit permit
    PENDING_CEO = "pending_ceo"
    PENDING_FACTORY = "pending_factory"
    PENDING_SECURITY = "pending_security"
    EXITED = "exited"

    # Security module
    PENDING_SUPERVISOR = "pending_supervisor"
    SUPERVISOR_CHECKED = "supervisor_checked"   # delay only, waits for supervisor batch
    FACTORY_CHECKED = "factory_checked"         # waits for factory batch
    ARCHIVED = "archived"

    # Warehouse dispatch
    APPROVED = "approved"

    # Shared terminal
    REJECTED = "rejected"


SECURITY_BATCH_TYPES = (DocType.SECURITY_LOG, DocType.SECURITY_DELAY)

# Roles that pass any gate. CEO is dropped on restricted steps; admin never is.
ADMIN_ROLES = frozenset({Role.ADMIN.value})
OVERRIDE_ROLES = frozenset({Role.ADMIN.value, Role.CEO.value})


# =============================================================================
# CHAIN DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class WorkflowStep:
    """
    One non-terminal state of a chain.

    required_roles: roles allowed to approve or reject out of this state
    restricted: CEO override does not apply (admin still does)
    batched: only the daily batch operations may advance out of this state
    approver_field: document field that receives the approver's name
    required_fields: payload fields the caller must supply to leave this state
    """
    state: str
    required_roles: FrozenSet[str]
    restricted: bool = False
    batched: bool = False
    approver_field: Optional[str] = None
    required_fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkflowDefinition:
    """Ordered chain of steps ending in a terminal state."""
    doc_type: str
    steps: Tuple[WorkflowStep, ...]
    final_state: str
    terminal_states: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def states(self) -> List[str]:
        return [s.state for s in self.steps] + [self.final_state]


def _step(state: WorkflowStatus, roles, **kwargs) -> WorkflowStep:
    return WorkflowStep(
        state=state.value,
        required_roles=frozenset(r.value for r in roles),
        **kwargs
    )


def _definition(doc_type: DocType, steps: List[WorkflowStep], final_state: WorkflowStatus) -> WorkflowDefinition:
    return WorkflowDefinition(
        doc_type=doc_type.value,
        steps=tuple(steps),
        final_state=final_state.value,
        terminal_states=frozenset({final_state.value, WorkflowStatus.REJECTED.value}),
    )


WORKFLOW_DEFINITIONS: Dict[str, WorkflowDefinition] = {
    DocType.PAYMENT_ORDER.value: _definition(DocType.PAYMENT_ORDER, [
        _step(WorkflowStatus.PENDING, [Role.FINANCIAL], approver_field="approver_financial"),
        _step(WorkflowStatus.FINANCE_APPROVED, [Role.MANAGER], approver_field="approver_manager"),
        _step(WorkflowStatus.MANAGER_APPROVED, [Role.CEO], approver_field="approver_ceo"),
    ], WorkflowStatus.CEO_APPROVED),

    DocType.EXIT_PERMIT.value: _definition(DocType.EXIT_PERMIT, [
        _step(WorkflowStatus.PENDING_CEO, [Role.CEO], approver_field="approver_ceo"),
        _step(WorkflowStatus.PENDING_FACTORY, [Role.FACTORY_MANAGER], approver_field="approver_factory"),
        _step(
            WorkflowStatus.PENDING_SECURITY,
            [Role.SECURITY_HEAD, Role.SECURITY_GUARD],
            restricted=True,
            approver_field="approver_security",
            required_fields=("exit_time",),
        ),
    ], WorkflowStatus.EXITED),

    DocType.SECURITY_LOG.value: _definition(DocType.SECURITY_LOG, [
        _step(WorkflowStatus.PENDING_SUPERVISOR, [Role.SECURITY_HEAD], approver_field="approver_supervisor"),
        _step(WorkflowStatus.PENDING_FACTORY, [Role.FACTORY_MANAGER], approver_field="approver_factory"),
        _step(WorkflowStatus.FACTORY_CHECKED, [Role.FACTORY_MANAGER], batched=True),
        _step(WorkflowStatus.PENDING_CEO, [Role.CEO], approver_field="approver_ceo"),
    ], WorkflowStatus.ARCHIVED),

    DocType.SECURITY_DELAY.value: _definition(DocType.SECURITY_DELAY, [
        _step(WorkflowStatus.PENDING_SUPERVISOR, [Role.SECURITY_HEAD], approver_field="approver_supervisor"),
        _step(WorkflowStatus.SUPERVISOR_CHECKED, [Role.SECURITY_HEAD], batched=True),
        _step(WorkflowStatus.PENDING_FACTORY, [Role.FACTORY_MANAGER], approver_field="approver_factory"),
        _step(WorkflowStatus.FACTORY_CHECKED, [Role.FACTORY_MANAGER], batched=True),
        _step(WorkflowStatus.PENDING_CEO, [Role.CEO], approver_field="approver_ceo"),
    ], WorkflowStatus.ARCHIVED),

    DocType.SECURITY_INCIDENT.value: _definition(DocType.SECURITY_INCIDENT, [
        _step(WorkflowStatus.PENDING_SUPERVISOR, [Role.SECURITY_HEAD], approver_field="approver_supervisor"),
        _step(WorkflowStatus.PENDING_FACTORY, [Role.FACTORY_MANAGER], approver_field="approver_factory"),
        _step(WorkflowStatus.PENDING_CEO, [Role.CEO], approver_field="approver_ceo"),
    ], WorkflowStatus.ARCHIVED),

    DocType.WAREHOUSE_DISPATCH.value: _definition(DocType.WAREHOUSE_DISPATCH, [
        _step(WorkflowStatus.PENDING, [Role.ADMIN, Role.CEO], restricted=True, approver_field="approver_ceo"),
    ], WorkflowStatus.APPROVED),
}

# Fields written by the engine; never accepted from an edit payload.
APPROVER_FIELDS = frozenset(
    step.approver_field
    for definition in WORKFLOW_DEFINITIONS.values()
    for step in definition.steps
    if step.approver_field
)


def normalize_role(role: Optional[str]) -> str:
    """Role comparisons are case-insensitive."""
    if isinstance(role, Role):
        return role.value
    return (role or "").strip().lower()


def normalize_doc_type(doc_type) -> str:
    """Accept enum members, values and loose spellings ("exit-permit")."""
    if isinstance(doc_type, DocType):
        return doc_type.value
    return (doc_type or "").strip().upper().replace("-", "_").replace(" ", "_")


# =============================================================================
# REGISTRY
# =============================================================================

class WorkflowRegistry:
    """
    Read-only lookups over WORKFLOW_DEFINITIONS.

    Unknown document types raise KeyError; the executor turns that into a
    NotFoundError for callers.
    """

    @staticmethod
    def get_definition(doc_type) -> WorkflowDefinition:
        return WORKFLOW_DEFINITIONS[normalize_doc_type(doc_type)]

    @staticmethod
    def has_type(doc_type) -> bool:
        return normalize_doc_type(doc_type) in WORKFLOW_DEFINITIONS

    @staticmethod
    def chain(doc_type) -> List[WorkflowStep]:
        return list(WorkflowRegistry.get_definition(doc_type).steps)

    @staticmethod
    def states(doc_type) -> List[str]:
        """All chain states in order, final state last (REJECTED excluded)."""
        return WorkflowRegistry.get_definition(doc_type).states

    @staticmethod
    def initial_state(doc_type) -> str:
        return WorkflowRegistry.get_definition(doc_type).steps[0].state

    @staticmethod
    def is_terminal(doc_type, status: str) -> bool:
        return status in WorkflowRegistry.get_definition(doc_type).terminal_states

    @staticmethod
    def step(doc_type, status: str) -> Optional[WorkflowStep]:
        for step in WorkflowRegistry.get_definition(doc_type).steps:
            if step.state == status:
                return step
        return None

    @staticmethod
    def next_state(doc_type, status: str) -> Optional[str]:
        """State after ``status`` in the chain, or None for terminal/unknown states."""
        states = WorkflowRegistry.states(doc_type)
        if status not in states:
            return None
        idx = states.index(status)
        if idx + 1 >= len(states):
            return None
        return states[idx + 1]

    @staticmethod
    def position(doc_type, status: str) -> int:
        """Index of ``status`` in the chain; -1 for REJECTED or unknown."""
        states = WorkflowRegistry.states(doc_type)
        return states.index(status) if status in states else -1

    @staticmethod
    def is_authorized(doc_type, status: str, role: str) -> bool:
        """
        Check whether ``role`` may approve or reject out of ``status``.

        Admin always passes. CEO passes unless the step is restricted.
        """
        step = WorkflowRegistry.step(doc_type, status)
        if step is None:
            return False
        role_key = normalize_role(role)
        if role_key in ADMIN_ROLES:
            return True
        if role_key in step.required_roles:
            return True
        return role_key in OVERRIDE_ROLES and not step.restricted

    @staticmethod
    def get_all_doc_types() -> List[str]:
        return [d.value for d in DocType]

    @staticmethod
    def describe(doc_type) -> Dict:
        """Serializable view of a chain for the console."""
        definition = WorkflowRegistry.get_definition(doc_type)
        return {
            "doc_type": definition.doc_type,
            "initial_state": definition.steps[0].state,
            "final_state": definition.final_state,
            "terminal_states": sorted(definition.terminal_states),
            "steps": [
                {
                    "state": s.state,
                    "required_roles": sorted(s.required_roles),
                    "restricted": s.restricted,
                    "batched": s.batched,
                    "approver_field": s.approver_field,
                    "required_fields": list(s.required_fields),
                }
                for s in definition.steps
            ],
        }
