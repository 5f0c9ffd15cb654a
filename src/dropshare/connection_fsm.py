"""
Dropshare - Connection State Machine for peer sessions.

Created by orpheus497

This module implements a finite state machine for the lifecycle of one peer
session as seen by the outside world: connecting, verifying, connected, and
the terminal error and disconnected states. Transitions only move forward;
a session in a terminal state is never reused.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Observable status of a peer session."""

    CONNECTING = "connecting"  # Channel requested, not yet open
    VERIFYING = "verifying"  # Channel open, handshake in progress
    CONNECTED = "connected"  # Handshake complete
    ERROR = "error"  # Handshake failed (terminal)
    DISCONNECTED = "disconnected"  # Channel closed or peer left (terminal)


class ConnectionEvent(Enum):
    """Events that trigger state transitions."""

    CHANNEL_OPENED = auto()  # Transport reported the channel open
    VERIFICATION_SUCCEEDED = auto()  # Challenge-response completed
    HANDSHAKE_FAILED = auto()  # Malformed keys or bad signature
    DISCONNECTED = auto()  # Channel closed, errored, or DISCONNECTED received


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: ConnectionStatus
    event: ConnectionEvent
    to_state: ConnectionStatus
    timestamp: float = field(default_factory=time.time)


TERMINAL_STATES = frozenset({ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED})


class ConnectionStateMachine:
    """
    Finite state machine for one peer session.

    Enforces valid state transitions and keeps a short transition history.
    """

    TRANSITIONS: Dict[ConnectionStatus, Dict[ConnectionEvent, ConnectionStatus]] = {
        ConnectionStatus.CONNECTING: {
            ConnectionEvent.CHANNEL_OPENED: ConnectionStatus.VERIFYING,
            ConnectionEvent.HANDSHAKE_FAILED: ConnectionStatus.ERROR,
            ConnectionEvent.DISCONNECTED: ConnectionStatus.DISCONNECTED,
        },
        ConnectionStatus.VERIFYING: {
            ConnectionEvent.VERIFICATION_SUCCEEDED: ConnectionStatus.CONNECTED,
            ConnectionEvent.HANDSHAKE_FAILED: ConnectionStatus.ERROR,
            ConnectionEvent.DISCONNECTED: ConnectionStatus.DISCONNECTED,
        },
        ConnectionStatus.CONNECTED: {
            ConnectionEvent.HANDSHAKE_FAILED: ConnectionStatus.ERROR,
            ConnectionEvent.DISCONNECTED: ConnectionStatus.DISCONNECTED,
        },
        ConnectionStatus.ERROR: {},
        ConnectionStatus.DISCONNECTED: {},
    }

    def __init__(self, peer_id: str, initial_state: ConnectionStatus = ConnectionStatus.CONNECTING):
        """
        Initialize state machine.

        Args:
            peer_id: Peer this session belongs to (for logging)
            initial_state: Initial state (default: CONNECTING)
        """
        self.peer_id = peer_id
        self.current_state = initial_state
        self.previous_state: Optional[ConnectionStatus] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = 20

        # Callbacks
        self.on_state_change: Optional[Callable[[ConnectionStatus, ConnectionStatus], None]] = None

        logger.debug(f"[{peer_id}] State machine initialized in state: {self.current_state.name}")

    def transition(self, event: ConnectionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Error message if event is HANDSHAKE_FAILED

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.debug(
                f"[{self.peer_id}] Ignored transition: {self.current_state.name} + {event.name}"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event == ConnectionEvent.HANDSHAKE_FAILED:
            self.error_message = error_msg or "Unknown error"

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(
            f"[{self.peer_id}] State transition: {old_state.name} -> {new_state.name} "
            f"(event: {event.name})"
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return True

    def is_valid_transition(self, from_state: ConnectionStatus, event: ConnectionEvent) -> bool:
        return event in self.TRANSITIONS.get(from_state, {})

    def get_state(self) -> ConnectionStatus:
        """Get current state."""
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def is_connected(self) -> bool:
        return self.current_state == ConnectionStatus.CONNECTED

    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STATES

    def get_history(self, count: int = 10) -> List[StateTransition]:
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "peer_id": self.peer_id,
            "current_state": self.current_state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "is_connected": self.is_connected(),
            "is_terminal": self.is_terminal(),
        }

    def __repr__(self) -> str:
        return (
            f"ConnectionStateMachine(peer={self.peer_id}, state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
