"""
Canonical workflow types and the settlement state machine definition
(``settlement_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for workflow state machines, plus the single
``SETTLEMENT_WORKFLOW`` shared by bills, sales invoices and credit notes.
The settlement service consults it before every transition; there is no
per-document-type copy of the rules.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions other than the listed
  ``terminal_exits`` (resubmission of a rejected document creates a new
  document, it does not move the rejected one).
"""

from __future__ import annotations

from dataclasses import dataclass

from settlement_kernel.logging_config import get_logger

logger = get_logger("domain.workflow")


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the settlement service does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``moves_money=True`` marks transitions that go through the Balance Guard
    and the Allocation Calculator.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    moves_money: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"initial_state {self.initial_state!r} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Transition {t.action} references unknown state "
                    f"({t.from_state} -> {t.to_state})"
                )
        for state in self.terminal_states:
            if state not in self.states:
                raise ValueError(f"terminal state {state!r} not in states")

    def transitions_for(self, from_state: str, action: str) -> tuple[Transition, ...]:
        """All transitions for ``action`` leaving ``from_state``."""
        return tuple(
            t for t in self.transitions
            if t.from_state == from_state and t.action == action
        )

    def allows(self, from_state: str, action: str) -> bool:
        return bool(self.transitions_for(from_state, action))

    def actions_from(self, state: str) -> tuple[str, ...]:
        """Distinct actions available from ``state``, in declaration order."""
        seen: list[str] = []
        for t in self.transitions:
            if t.from_state == state and t.action not in seen:
                seen.append(t.action)
        return tuple(seen)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

REASON_PROVIDED = Guard(
    name="reason_provided",
    description="A non-empty reason accompanies the action",
)

NOT_LOCKED = Guard(
    name="not_locked",
    description="No payment or credit has been applied to the document",
)

SUFFICIENT_FUNDS = Guard(
    name="sufficient_funds",
    description="Every funding leg is covered by its source's available balance",
)

REVERSAL_REASON_IF_PAID = Guard(
    name="reversal_reason_if_paid",
    description="Documents with payments need an explicit reversal reason to cancel",
)


# -----------------------------------------------------------------------------
# Settlement workflow
# -----------------------------------------------------------------------------

DRAFT = "draft"
PENDING_APPROVAL = "pending_approval"
APPROVED = "approved"
PARTIAL = "partial"
PAID = "paid"
REJECTED = "rejected"
CANCELLED = "cancelled"

SETTLEMENT_WORKFLOW = Workflow(
    name="financial_document_settlement",
    description="Draft -> approval -> settlement lifecycle of payable and receivable documents",
    initial_state=DRAFT,
    states=(DRAFT, PENDING_APPROVAL, APPROVED, PARTIAL, PAID, REJECTED, CANCELLED),
    terminal_states=(PAID, REJECTED, CANCELLED),
    transitions=(
        Transition(DRAFT, DRAFT, action="edit", guard=NOT_LOCKED),
        Transition(DRAFT, PENDING_APPROVAL, action="submit"),
        Transition(DRAFT, APPROVED, action="approve"),
        Transition(PENDING_APPROVAL, APPROVED, action="approve"),
        Transition(DRAFT, REJECTED, action="reject", guard=REASON_PROVIDED),
        Transition(PENDING_APPROVAL, REJECTED, action="reject", guard=REASON_PROVIDED),
        Transition(APPROVED, PARTIAL, action="settle", guard=SUFFICIENT_FUNDS, moves_money=True),
        Transition(APPROVED, PAID, action="settle", guard=SUFFICIENT_FUNDS, moves_money=True),
        Transition(PARTIAL, PARTIAL, action="settle", guard=SUFFICIENT_FUNDS, moves_money=True),
        Transition(PARTIAL, PAID, action="settle", guard=SUFFICIENT_FUNDS, moves_money=True),
        Transition(DRAFT, CANCELLED, action="cancel"),
        Transition(APPROVED, CANCELLED, action="cancel", guard=REVERSAL_REASON_IF_PAID),
        Transition(PARTIAL, CANCELLED, action="cancel", guard=REVERSAL_REASON_IF_PAID),
        Transition(PAID, CANCELLED, action="cancel", guard=REVERSAL_REASON_IF_PAID),
        # A rejected document stays rejected; resubmission creates a new draft.
        Transition(REJECTED, REJECTED, action="resubmit"),
        Transition(DRAFT, DRAFT, action="delete", guard=NOT_LOCKED),
        Transition(REJECTED, REJECTED, action="delete", guard=NOT_LOCKED),
        Transition(CANCELLED, CANCELLED, action="delete", guard=NOT_LOCKED),
    ),
)

logger.debug(
    "settlement_workflow_registered",
    extra={
        "workflow_name": SETTLEMENT_WORKFLOW.name,
        "state_count": len(SETTLEMENT_WORKFLOW.states),
        "transition_count": len(SETTLEMENT_WORKFLOW.transitions),
        "initial_state": SETTLEMENT_WORKFLOW.initial_state,
    },
)
