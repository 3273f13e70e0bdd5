"""States, commands and transitions of the live refresh loop."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class LiveState(str, Enum):
    """Live monitor state."""
    IDLE = "idle"
    GATHERING = "gathering"
    RENDERED = "rendered"
    AWAITING_INPUT = "awaiting_input"
    REFRESHING = "refreshing"
    DISPATCHING = "dispatching"
    RETURNED_TO_MENU = "returned_to_menu"
    EMERGENCY_EXIT = "emergency_exit"


class LiveCommand(str, Enum):
    """Operator keystrokes and internal loop events."""
    # Operator commands
    REFRESH = "refresh"
    MENU = "menu"
    SHOW_TARGETS = "show_targets"
    SHOW_FAILED = "show_failed"
    MANAGE_FAILED = "manage_failed"
    SHOW_DEALLOCATED = "show_deallocated"
    START_DEALLOCATED = "start_deallocated"
    QUIT = "quit"
    # Loop events
    START = "start"
    GATHERED = "gathered"
    RENDER_COMPLETE = "render_complete"
    TIMEOUT = "timeout"
    HANDLED = "handled"
    QUIT_CONFIRMED = "quit_confirmed"


TERMINAL_STATES = frozenset({LiveState.RETURNED_TO_MENU, LiveState.EMERGENCY_EXIT})

# Sub-views and bulk actions are all handled in DISPATCHING.
DISPATCH_COMMANDS = frozenset({
    LiveCommand.SHOW_TARGETS,
    LiveCommand.SHOW_FAILED,
    LiveCommand.MANAGE_FAILED,
    LiveCommand.SHOW_DEALLOCATED,
    LiveCommand.START_DEALLOCATED,
    LiveCommand.QUIT,
})

KEY_BINDINGS: Dict[str, LiveCommand] = {
    "r": LiveCommand.REFRESH,
    "R": LiveCommand.REFRESH,
    "m": LiveCommand.MENU,
    "M": LiveCommand.MENU,
    "t": LiveCommand.SHOW_TARGETS,
    "T": LiveCommand.SHOW_TARGETS,
    "f": LiveCommand.SHOW_FAILED,
    "F": LiveCommand.MANAGE_FAILED,
    "d": LiveCommand.SHOW_DEALLOCATED,
    "D": LiveCommand.SHOW_DEALLOCATED,
    "s": LiveCommand.START_DEALLOCATED,
    "S": LiveCommand.START_DEALLOCATED,
    "q": LiveCommand.QUIT,
    "Q": LiveCommand.QUIT,
}


def _transitions() -> Dict[Tuple[LiveState, LiveCommand], LiveState]:
    table = {
        (LiveState.IDLE, LiveCommand.START): LiveState.GATHERING,
        (LiveState.GATHERING, LiveCommand.GATHERED): LiveState.RENDERED,
        (LiveState.RENDERED, LiveCommand.RENDER_COMPLETE): LiveState.AWAITING_INPUT,
        (LiveState.AWAITING_INPUT, LiveCommand.TIMEOUT): LiveState.REFRESHING,
        (LiveState.AWAITING_INPUT, LiveCommand.REFRESH): LiveState.REFRESHING,
        (LiveState.AWAITING_INPUT, LiveCommand.MENU): LiveState.RETURNED_TO_MENU,
        (LiveState.REFRESHING, LiveCommand.START): LiveState.GATHERING,
        (LiveState.DISPATCHING, LiveCommand.HANDLED): LiveState.REFRESHING,
        (LiveState.DISPATCHING, LiveCommand.QUIT_CONFIRMED): LiveState.EMERGENCY_EXIT,
    }
    for command in DISPATCH_COMMANDS:
        table[(LiveState.AWAITING_INPUT, command)] = LiveState.DISPATCHING
    return table


TRANSITIONS: Dict[Tuple[LiveState, LiveCommand], LiveState] = _transitions()


class InvalidTransition(RuntimeError):
    """Raised when a command is not valid in the current state."""

    def __init__(self, state: LiveState, command: LiveCommand):
        super().__init__(f"No transition from {state.value} on {command.value}")
        self.state = state
        self.command = command


def parse_key(key: Optional[str]) -> Optional[LiveCommand]:
    """Map a single keystroke to a command; unknown keys map to None."""

    if not key:
        return None
    return KEY_BINDINGS.get(key)


def next_state(state: LiveState, command: LiveCommand) -> LiveState:
    try:
        return TRANSITIONS[(state, command)]
    except KeyError:
        raise InvalidTransition(state, command) from None
