"""
Unit tests for the settlement workflow definition.

The workflow is pure data; these tests pin the legal transitions so that a
change to the state machine is a deliberate, reviewed change.
"""

import pytest

from settlement_kernel.domain.workflow import (
    APPROVED,
    CANCELLED,
    DRAFT,
    PAID,
    PARTIAL,
    PENDING_APPROVAL,
    REJECTED,
    SETTLEMENT_WORKFLOW,
    Transition,
    Workflow,
)


class TestSettlementWorkflow:
    """Legal and illegal actions per state."""

    @pytest.mark.parametrize("state,action", [
        (DRAFT, "edit"),
        (DRAFT, "submit"),
        (DRAFT, "approve"),
        (PENDING_APPROVAL, "approve"),
        (PENDING_APPROVAL, "reject"),
        (APPROVED, "settle"),
        (PARTIAL, "settle"),
        (PARTIAL, "cancel"),
        (PAID, "cancel"),
        (REJECTED, "resubmit"),
        (CANCELLED, "delete"),
    ])
    def test_allowed(self, state, action):
        assert SETTLEMENT_WORKFLOW.allows(state, action)

    @pytest.mark.parametrize("state,action", [
        (DRAFT, "settle"),
        (PENDING_APPROVAL, "settle"),
        (PENDING_APPROVAL, "edit"),
        (APPROVED, "approve"),
        (APPROVED, "edit"),
        (PAID, "settle"),
        (REJECTED, "approve"),
        (CANCELLED, "settle"),
        (APPROVED, "delete"),
        (PENDING_APPROVAL, "cancel"),
    ])
    def test_refused(self, state, action):
        assert not SETTLEMENT_WORKFLOW.allows(state, action)

    def test_settle_moves_money(self):
        transitions = SETTLEMENT_WORKFLOW.transitions_for(APPROVED, "settle")
        assert {t.to_state for t in transitions} == {PARTIAL, PAID}
        assert all(t.moves_money for t in transitions)

    def test_terminal_states(self):
        assert SETTLEMENT_WORKFLOW.is_terminal(PAID)
        assert SETTLEMENT_WORKFLOW.is_terminal(REJECTED)
        assert not SETTLEMENT_WORKFLOW.is_terminal(PARTIAL)

    def test_actions_from_draft(self):
        assert SETTLEMENT_WORKFLOW.actions_from(DRAFT) == (
            "edit", "submit", "approve", "reject", "cancel", "delete",
        )


class TestWorkflowValidation:
    """Structural checks on Workflow construction."""

    def test_unknown_initial_state(self):
        with pytest.raises(ValueError):
            Workflow(name="w", description="", initial_state="x", states=("a",), transitions=())

    def test_transition_to_unknown_state(self):
        with pytest.raises(ValueError):
            Workflow(
                name="w",
                description="",
                initial_state="a",
                states=("a",),
                transitions=(Transition("a", "b", action="go"),),
            )
