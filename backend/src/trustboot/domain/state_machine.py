"""Bootstrap state machine.

States:
    UNINITIALIZED: nothing done yet
    STORE_CREATED: the role's certificate store exists
    AUTHORITY_MATERIAL_PRESENT: the CA identity is present (generated or imported)
    OWN_CERTIFICATE_ISSUED: the role's end-entity certificate exists
    VALIDATED: terminal, the store matches the trust policy

Transition Table:
    (UNINITIALIZED, STORE_ENSURED) -> STORE_CREATED
    (STORE_CREATED, AUTHORITY_MATERIAL_ENSURED) -> AUTHORITY_MATERIAL_PRESENT
    (AUTHORITY_MATERIAL_PRESENT, OWN_CERTIFICATE_ENSURED) -> OWN_CERTIFICATE_ISSUED
    (OWN_CERTIFICATE_ISSUED, ARTIFACTS_PUBLISHED) -> OWN_CERTIFICATE_ISSUED  (authority only)
    (OWN_CERTIFICATE_ISSUED, VALIDATION_PASSED) -> VALIDATED

There is no failed state: a fatal error aborts the process instead. A step
repeated after its state has been reached leaves the state unchanged.
"""

import logging

from opentelemetry import metrics

from trustboot.domain.states import BootstrapEvent as Event
from trustboot.domain.states import BootstrapState as State
from trustboot.domain.states import Role
from trustboot.errors import BootstrapError

logger = logging.getLogger(__name__)

meter = metrics.get_meter("trustboot.state_machine")

state_transitions_total = meter.create_counter(
    name="trustboot_state_transitions_total",
    description="Total bootstrap state transitions",
    unit="1",
)


class InvalidTransitionError(BootstrapError):
    """Raised when a bootstrap step is attempted out of order."""

    kind = "invalid_transition"

    def __init__(self, role: str, current_state: str, event: str, step: str | None = None):
        self.role = role
        self.current_state = current_state
        self.event = event
        super().__init__(
            f"Invalid transition: {role} in state {current_state} cannot handle {event}", step
        )


class BootstrapStateMachine:
    """Tracks one role's progress from UNINITIALIZED to VALIDATED."""

    TRANSITIONS: dict[tuple[State, Event], State] = {
        (State.UNINITIALIZED, Event.STORE_ENSURED): State.STORE_CREATED,
        (State.STORE_CREATED, Event.AUTHORITY_MATERIAL_ENSURED): State.AUTHORITY_MATERIAL_PRESENT,
        (State.AUTHORITY_MATERIAL_PRESENT, Event.OWN_CERTIFICATE_ENSURED): (
            State.OWN_CERTIFICATE_ISSUED
        ),
        (State.OWN_CERTIFICATE_ISSUED, Event.ARTIFACTS_PUBLISHED): State.OWN_CERTIFICATE_ISSUED,
        (State.OWN_CERTIFICATE_ISSUED, Event.VALIDATION_PASSED): State.VALIDATED,
        # VALIDATED is terminal
    }

    ORDER: tuple[State, ...] = (
        State.UNINITIALIZED,
        State.STORE_CREATED,
        State.AUTHORITY_MATERIAL_PRESENT,
        State.OWN_CERTIFICATE_ISSUED,
        State.VALIDATED,
    )

    # Each event leads to one state whatever state it is applied in
    TARGETS: dict[Event, State] = {event: target for (_, event), target in TRANSITIONS.items()}

    # Events restricted to a subset of roles
    ROLE_EVENTS: dict[Event, frozenset[Role]] = {
        Event.ARTIFACTS_PUBLISHED: frozenset({Role.AUTHORITY}),
    }

    def __init__(self, role: Role, state: State = State.UNINITIALIZED):
        self.role = role
        self.state = state

    def _allowed_for_role(self, event: Event) -> bool:
        allowed_roles = self.ROLE_EVENTS.get(event)
        return allowed_roles is None or self.role in allowed_roles

    def can_transition(self, event: Event) -> bool:
        if not self._allowed_for_role(event):
            return False
        return (self.state, event) in self.TRANSITIONS

    def has_reached(self, event: Event) -> bool:
        """True when the state ``event`` leads to is the current one or behind it."""
        if not self._allowed_for_role(event):
            return False
        return self.ORDER.index(self.state) >= self.ORDER.index(self.TARGETS[event])

    def require(self, event: Event) -> None:
        """Check, before a step does any work, that its event will be accepted.

        Raises:
            InvalidTransitionError: If the step runs ahead of the ones it depends on.
        """
        if not self.can_transition(event) and not self.has_reached(event):
            self._reject(event)

    def advance(self, event: Event) -> State:
        """Apply ``event``; a repeated step whose state is already reached changes nothing."""
        if not self.can_transition(event) and self.has_reached(event):
            return self.state
        return self.transition(event)

    def transition(self, event: Event) -> State:
        """Apply ``event`` and return the new state.

        Raises:
            InvalidTransitionError: If the event is not valid for this role and state.
        """
        if not self.can_transition(event):
            self._reject(event)

        previous = self.state
        self.state = self.TRANSITIONS[(previous, event)]

        logger.debug(
            "state_transition",
            extra={
                "role": self.role.value,
                "from_state": previous.value,
                "to_state": self.state.value,
                "event": event.value,
            },
        )
        state_transitions_total.add(
            1,
            {
                "role": self.role.value,
                "from_state": previous.value,
                "to_state": self.state.value,
                "event": event.value,
            },
        )
        return self.state

    def _reject(self, event: Event) -> None:
        logger.warning(
            "invalid_transition_attempted",
            extra={"role": self.role.value, "state": self.state.value, "event": event.value},
        )
        raise InvalidTransitionError(self.role.value, self.state.value, event.value)

    @property
    def is_terminal(self) -> bool:
        return self.state == State.VALIDATED
