"""Validated state transitions of the remote store connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from mail_monitor.models.types import ConnectionState

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.unknown: frozenset(
        {ConnectionState.connecting, ConnectionState.unavailable},
    ),
    ConnectionState.connecting: frozenset(
        {
            ConnectionState.connected,
            ConnectionState.failed,
            ConnectionState.unavailable,
            ConnectionState.disconnected,
        },
    ),
    ConnectionState.connected: frozenset(
        {ConnectionState.disconnected},
    ),
    ConnectionState.failed: frozenset(
        {ConnectionState.connecting, ConnectionState.disconnected},
    ),
    ConnectionState.disconnected: frozenset(
        {ConnectionState.connecting},
    ),
    # Terminal: the environment cannot host the link.
    ConnectionState.unavailable: frozenset(),
}


class InvalidStateTransitionError(RuntimeError):
    """Raised when a connection state change is not allowed."""


@dataclass(frozen=True)
class StateTransition:
    """One recorded state change."""

    from_state: ConnectionState
    to_state: ConnectionState
    at: datetime
    reason: str = ""


class LifecycleManager:
    """Holds the current connection state and enforces VALID_TRANSITIONS.

    Re-entering the current state is a no-op.
    """

    def __init__(self, *, history_size: int = 50) -> None:
        self._state = ConnectionState.unknown
        self._history: list[StateTransition] = []
        self._history_size = history_size

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        return list(self._history)

    def can_transition(self, to_state: ConnectionState) -> bool:
        if to_state == self._state:
            return True
        return to_state in VALID_TRANSITIONS[self._state]

    def transition(self, to_state: ConnectionState, *, reason: str = "") -> StateTransition | None:
        """Move to `to_state`.

        Returns:
            The recorded transition, or None if already in `to_state`.

        Raises:
            InvalidStateTransitionError: If the move is not allowed.
        """
        if to_state == self._state:
            return None
        if not self.can_transition(to_state):
            raise InvalidStateTransitionError(
                f"Invalid connection transition {self._state.value} -> {to_state.value}",
            )
        record = StateTransition(
            from_state=self._state,
            to_state=to_state,
            at=datetime.now(tz=UTC),
            reason=reason,
        )
        self._state = to_state
        self._history.append(record)
        del self._history[: -self._history_size]
        logger.info(
            "Connection state %s -> %s",
            record.from_state.value,
            record.to_state.value,
            extra={"operation": "connection", "reason": reason or None},
        )
        return record
