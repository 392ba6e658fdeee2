"""Structural and transition tests for the bootstrap state machine.

These tests verify:
1. Every non-terminal state has a way forward
2. The terminal state has none
3. One test per transition table entry
4. Role restrictions on events
"""

import pytest

from trustboot.domain.state_machine import BootstrapStateMachine, InvalidTransitionError
from trustboot.domain.states import BootstrapEvent, BootstrapState, Role
from trustboot.errors import BootstrapError

# =============================================================================
# Structural Tests
# =============================================================================


class TestBootstrapStateMachineStructure:
    """Structural tests for BootstrapStateMachine."""

    def test_all_non_terminal_states_have_transitions(self):
        """Every non-terminal state must have at least one transition out."""
        non_terminal_states = set(BootstrapState) - {BootstrapState.VALIDATED}

        covered_states = {state for state, _ in BootstrapStateMachine.TRANSITIONS.keys()}

        for state in non_terminal_states:
            assert state in covered_states, f"Non-terminal state {state} has no transitions"

    def test_terminal_state_has_no_transitions(self):
        """VALIDATED is terminal - must have no transitions out."""
        transitions_from_terminal = [
            (s, e)
            for s, e in BootstrapStateMachine.TRANSITIONS.keys()
            if s == BootstrapState.VALIDATED
        ]

        assert transitions_from_terminal == []

    def test_all_events_are_used(self):
        """Every event in enum must be used in at least one transition."""
        used_events = {event for _, event in BootstrapStateMachine.TRANSITIONS.keys()}

        for event in BootstrapEvent:
            assert event in used_events, f"Event {event} is never used in transitions"

    def test_no_failed_state(self):
        """Fatal errors abort the process; there is nothing to persist."""
        assert "failed" not in {state.value for state in BootstrapState}


# =============================================================================
# Transition Tests
# =============================================================================


class TestBootstrapTransitions:
    """One test per entry in the transition table."""

    def test_uninitialized_store_ensured(self):
        machine = BootstrapStateMachine(Role.LEAF)

        assert machine.transition(BootstrapEvent.STORE_ENSURED) == BootstrapState.STORE_CREATED

    def test_store_created_authority_material_ensured(self):
        machine = BootstrapStateMachine(Role.LEAF, BootstrapState.STORE_CREATED)

        new_state = machine.transition(BootstrapEvent.AUTHORITY_MATERIAL_ENSURED)

        assert new_state == BootstrapState.AUTHORITY_MATERIAL_PRESENT

    def test_authority_material_present_own_certificate_ensured(self):
        machine = BootstrapStateMachine(Role.INHERITOR, BootstrapState.AUTHORITY_MATERIAL_PRESENT)

        new_state = machine.transition(BootstrapEvent.OWN_CERTIFICATE_ENSURED)

        assert new_state == BootstrapState.OWN_CERTIFICATE_ISSUED

    def test_own_certificate_issued_artifacts_published(self):
        """Export happens between issuing the own certificate and validation."""
        machine = BootstrapStateMachine(Role.AUTHORITY, BootstrapState.OWN_CERTIFICATE_ISSUED)

        new_state = machine.transition(BootstrapEvent.ARTIFACTS_PUBLISHED)

        assert new_state == BootstrapState.OWN_CERTIFICATE_ISSUED

    def test_own_certificate_issued_validation_passed(self):
        machine = BootstrapStateMachine(Role.AUTHORITY, BootstrapState.OWN_CERTIFICATE_ISSUED)

        assert machine.transition(BootstrapEvent.VALIDATION_PASSED) == BootstrapState.VALIDATED
        assert machine.is_terminal


class TestBootstrapInvalidTransitions:
    """Steps out of order are programming errors."""

    def test_cannot_skip_store(self):
        machine = BootstrapStateMachine(Role.AUTHORITY)

        with pytest.raises(InvalidTransitionError, match="uninitialized"):
            machine.transition(BootstrapEvent.AUTHORITY_MATERIAL_ENSURED)

    @pytest.mark.parametrize("role", [Role.INHERITOR, Role.LEAF])
    def test_only_authority_publishes(self, role):
        machine = BootstrapStateMachine(role, BootstrapState.OWN_CERTIFICATE_ISSUED)

        assert not machine.can_transition(BootstrapEvent.ARTIFACTS_PUBLISHED)
        with pytest.raises(InvalidTransitionError):
            machine.transition(BootstrapEvent.ARTIFACTS_PUBLISHED)

    def test_validated_is_final(self):
        machine = BootstrapStateMachine(Role.LEAF, BootstrapState.VALIDATED)

        for event in BootstrapEvent:
            assert not machine.can_transition(event)

    def test_failed_transition_keeps_state(self):
        machine = BootstrapStateMachine(Role.LEAF, BootstrapState.STORE_CREATED)

        with pytest.raises(InvalidTransitionError):
            machine.transition(BootstrapEvent.VALIDATION_PASSED)

        assert machine.state == BootstrapState.STORE_CREATED

    def test_invalid_transition_is_a_bootstrap_error(self):
        machine = BootstrapStateMachine(Role.AUTHORITY)

        with pytest.raises(BootstrapError) as exc_info:
            machine.transition(BootstrapEvent.VALIDATION_PASSED)

        assert isinstance(exc_info.value, InvalidTransitionError)
        assert exc_info.value.kind == "invalid_transition"


# =============================================================================
# Repeated Steps
# =============================================================================


class TestRepeatedSteps:
    """A step repeated after its state is reached is a no-op; a step run early is refused."""

    def test_order_lists_every_state(self):
        assert set(BootstrapStateMachine.ORDER) == set(BootstrapState)

    def test_every_event_has_one_target(self):
        assert set(BootstrapStateMachine.TARGETS) == set(BootstrapEvent)

    @pytest.mark.parametrize(
        "state, event",
        [
            (BootstrapState.STORE_CREATED, BootstrapEvent.STORE_ENSURED),
            (BootstrapState.OWN_CERTIFICATE_ISSUED, BootstrapEvent.STORE_ENSURED),
            (BootstrapState.OWN_CERTIFICATE_ISSUED, BootstrapEvent.AUTHORITY_MATERIAL_ENSURED),
            (BootstrapState.VALIDATED, BootstrapEvent.OWN_CERTIFICATE_ENSURED),
            (BootstrapState.VALIDATED, BootstrapEvent.VALIDATION_PASSED),
        ],
    )
    def test_advance_after_target_reached_keeps_state(self, state, event):
        machine = BootstrapStateMachine(Role.INHERITOR, state)

        machine.require(event)

        assert machine.advance(event) == state

    def test_authority_republishes_after_validation(self):
        machine = BootstrapStateMachine(Role.AUTHORITY, BootstrapState.VALIDATED)

        machine.require(BootstrapEvent.ARTIFACTS_PUBLISHED)

        assert machine.advance(BootstrapEvent.ARTIFACTS_PUBLISHED) == BootstrapState.VALIDATED

    def test_advance_applies_pending_transition(self):
        machine = BootstrapStateMachine(Role.LEAF)

        assert machine.advance(BootstrapEvent.STORE_ENSURED) == BootstrapState.STORE_CREATED

    def test_require_refuses_step_ahead_of_state(self):
        machine = BootstrapStateMachine(Role.LEAF, BootstrapState.STORE_CREATED)

        with pytest.raises(InvalidTransitionError):
            machine.require(BootstrapEvent.OWN_CERTIFICATE_ENSURED)

        assert machine.state == BootstrapState.STORE_CREATED

    def test_require_refuses_event_of_other_role(self):
        machine = BootstrapStateMachine(Role.LEAF, BootstrapState.VALIDATED)

        with pytest.raises(InvalidTransitionError):
            machine.require(BootstrapEvent.ARTIFACTS_PUBLISHED)
