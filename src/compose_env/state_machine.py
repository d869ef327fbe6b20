"""Environment lifecycle state machine using the ``transitions`` library.

Defines 9 states and the transitions between them.  The orchestrator
drives the machine; the machine only validates ordering (launch cannot
happen before preparation, readiness cannot be declared before launch).
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine

from src.compose_env.constants import (
    ALL_STATES,
    STATE_AWAITING_READY,
    STATE_DETECTING,
    STATE_LAUNCHING,
    STATE_NOT_STARTED,
    STATE_PREPARING,
    STATE_READY,
    STATE_STARTUP_FAILED,
    STATE_TEARDOWN_FAILED,
    STATE_TORN_DOWN,
)

logger = logging.getLogger(__name__)

STATES: list[str] = list(ALL_STATES)

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "detect", "source": STATE_NOT_STARTED, "dest": STATE_DETECTING},
    {"trigger": "prepare", "source": [STATE_DETECTING, STATE_LAUNCHING], "dest": STATE_PREPARING},
    {"trigger": "launch", "source": STATE_PREPARING, "dest": STATE_LAUNCHING},
    {
        "trigger": "await_ready",
        "source": [STATE_DETECTING, STATE_PREPARING, STATE_LAUNCHING],
        "dest": STATE_AWAITING_READY,
    },
    {"trigger": "mark_ready", "source": STATE_AWAITING_READY, "dest": STATE_READY},
    {
        "trigger": "fail_startup",
        "source": [STATE_DETECTING, STATE_PREPARING, STATE_LAUNCHING, STATE_AWAITING_READY],
        "dest": STATE_STARTUP_FAILED,
    },
    {
        "trigger": "tear_down",
        "source": [STATE_NOT_STARTED, STATE_READY, STATE_STARTUP_FAILED, STATE_TEARDOWN_FAILED],
        "dest": STATE_TORN_DOWN,
    },
    {
        "trigger": "fail_teardown",
        "source": [STATE_READY, STATE_STARTUP_FAILED, STATE_TEARDOWN_FAILED],
        "dest": STATE_TEARDOWN_FAILED,
    },
]

# States in which start() may be (re)entered
STARTABLE_STATES = {STATE_NOT_STARTED}
# States from which stop() has nothing left to do
STOPPED_STATES = {STATE_TORN_DOWN}


def create_environment_machine(
    model: Any, initial_state: str = STATE_NOT_STARTED
) -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    Triggers become coroutine methods on *model* (``await model.launch()``)
    and raise ``MachineError`` when fired from a state that does not allow
    them.

    Args:
        model: The object whose ``state`` attribute the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    machine = AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=False,
        ignore_invalid_triggers=False,
        after_state_change=_log_transition,
    )
    return machine


def _log_transition(event: Any) -> None:
    logger.debug(
        "Environment state: %s -> %s (%s)",
        event.transition.source,
        event.transition.dest,
        event.event.name,
    )
