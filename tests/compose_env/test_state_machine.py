"""Tests for the environment lifecycle state machine."""

from __future__ import annotations

import pytest
from transitions import MachineError

from src.compose_env.constants import ALL_STATES
from src.compose_env.state_machine import STATES, TRANSITIONS, create_environment_machine


class _Model:
    state: str


@pytest.fixture
def model() -> _Model:
    m = _Model()
    create_environment_machine(m)
    return m


class TestStateMachine:
    def test_all_states_defined(self) -> None:
        assert STATES == ALL_STATES
        for transition in TRANSITIONS:
            sources = transition["source"]
            sources = sources if isinstance(sources, list) else [sources]
            assert set(sources) <= set(STATES)
            assert transition["dest"] in STATES

    def test_initial_state(self, model) -> None:
        assert model.state == "not_started"

    @pytest.mark.asyncio
    async def test_owned_happy_path(self, model) -> None:
        for trigger in ("detect", "prepare", "launch", "await_ready", "mark_ready", "tear_down"):
            await getattr(model, trigger)()
        assert model.state == "torn_down"

    @pytest.mark.asyncio
    async def test_relaunch_after_port_conflict(self, model) -> None:
        await model.detect()
        await model.prepare()
        await model.launch()
        await model.prepare()
        assert model.state == "preparing"

    @pytest.mark.asyncio
    async def test_cannot_launch_before_prepare(self, model) -> None:
        await model.detect()
        with pytest.raises(MachineError):
            await model.launch()

    @pytest.mark.asyncio
    async def test_cannot_mark_ready_before_waiting(self, model) -> None:
        await model.detect()
        with pytest.raises(MachineError):
            await model.mark_ready()

    @pytest.mark.asyncio
    async def test_teardown_failure_can_retry(self, model) -> None:
        for trigger in ("detect", "await_ready", "mark_ready", "fail_teardown"):
            await getattr(model, trigger)()
        assert model.state == "teardown_failed"
        await model.tear_down()
        assert model.state == "torn_down"

    @pytest.mark.asyncio
    async def test_startup_failure_is_terminal_for_start(self, model) -> None:
        await model.detect()
        await model.fail_startup()
        with pytest.raises(MachineError):
            await model.detect()
        await model.tear_down()
        assert model.state == "torn_down"
