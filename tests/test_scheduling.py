import datetime as dt
from unittest import mock

import pytest

from zincati.machine import (
    DEFAULT_POSTPONEMENT_TIME_SECS,
    END_INTERVAL_SECS,
    MAX_FINALIZE_POSTPONEMENTS,
    AgentMachineState,
    Release,
    StateKind,
)
from zincati.scheduling import (
    UpdateAgentState,
    add_jitter,
    excluded_deployments,
    refresh_delay,
    should_tick_immediately,
)

UPDATE = Release(version="v1", payload="ostree-checksum")


def state(kind, release=None, counter=0):
    return AgentMachineState(kind=kind, release=release, counter=counter)


def test_should_tick_immediately_different_kinds():
    assert should_tick_immediately(
        state(StateKind.INITIALIZED), state(StateKind.REPORTED_STEADY)
    )
    assert should_tick_immediately(
        state(StateKind.NO_NEW_UPDATE), state(StateKind.UPDATE_AVAILABLE, UPDATE, 0)
    )


def test_should_tick_immediately_special_case():
    assert not should_tick_immediately(
        state(StateKind.REPORTED_STEADY), state(StateKind.NO_NEW_UPDATE)
    )


def test_should_tick_immediately_same_kinds():
    assert not should_tick_immediately(
        state(StateKind.NO_NEW_UPDATE), state(StateKind.NO_NEW_UPDATE)
    )
    assert not should_tick_immediately(
        state(StateKind.UPDATE_AVAILABLE, UPDATE, 0),
        state(StateKind.UPDATE_AVAILABLE, UPDATE, 1),
    )
    assert not should_tick_immediately(
        state(StateKind.UPDATE_STAGED, UPDATE, MAX_FINALIZE_POSTPONEMENTS),
        state(StateKind.UPDATE_STAGED, UPDATE, MAX_FINALIZE_POSTPONEMENTS - 1),
    )


@pytest.mark.parametrize("factor,expected", [(0, 300), (5, 315), (10, 330)])
def test_add_jitter_pinned(factor, expected):
    with mock.patch("random.randint", return_value=factor):
        assert add_jitter(dt.timedelta(seconds=300)) == dt.timedelta(seconds=expected)


def test_add_jitter_small_period_uses_one_second_steps():
    with mock.patch("random.randint", return_value=7):
        assert add_jitter(dt.timedelta(seconds=50)) == dt.timedelta(seconds=57)


def test_add_jitter_bounds():
    period = dt.timedelta(seconds=1000)
    for _ in range(200):
        result = add_jitter(period)
        assert dt.timedelta(seconds=1000) <= result <= dt.timedelta(seconds=1100)
        assert result.total_seconds() % 10 == 0


def test_refresh_delay_none_on_state_change():
    assert (
        refresh_delay(
            dt.timedelta(seconds=300),
            state(StateKind.INITIALIZED),
            state(StateKind.REPORTED_STEADY),
        )
        is None
    )


def test_refresh_delay_steady_with_jitter():
    steady = dt.timedelta(seconds=600)
    delay = refresh_delay(
        steady, state(StateKind.REPORTED_STEADY), state(StateKind.NO_NEW_UPDATE)
    )
    assert steady <= delay <= dt.timedelta(seconds=660)


def test_refresh_delay_postponement_without_jitter():
    delay = refresh_delay(
        dt.timedelta(seconds=300),
        state(StateKind.UPDATE_STAGED, UPDATE, MAX_FINALIZE_POSTPONEMENTS),
        state(StateKind.UPDATE_STAGED, UPDATE, MAX_FINALIZE_POSTPONEMENTS - 1),
    )
    assert delay == dt.timedelta(seconds=DEFAULT_POSTPONEMENT_TIME_SECS)


def test_refresh_delay_end_state():
    with mock.patch("random.randint", return_value=0):
        delay = refresh_delay(
            dt.timedelta(seconds=300), state(StateKind.END), state(StateKind.END)
        )
    assert delay == dt.timedelta(seconds=END_INTERVAL_SECS)


def test_update_agent_state_defaults():
    agent_state = UpdateAgentState()
    assert agent_state.machine_state.kind is StateKind.START
    assert agent_state.denylist == set()
    agent_state.denylist.add(UPDATE)
    assert UpdateAgentState().denylist == set()


def test_excluded_deployments_removes_booted():
    booted = Release(version="v2", payload="booted-checksum")
    older = Release(version="v1", payload="old-checksum")
    other = Release(version="v0", payload="other-checksum")
    assert excluded_deployments({booted, older, other}, booted) == sorted([older, other])


def test_excluded_deployments_only_booted():
    booted = Release(version="v2", payload="booted-checksum")
    assert excluded_deployments([booted], booted) == []


def test_excluded_deployments_missing_booted():
    booted = Release(version="v2", payload="booted-checksum")
    older = Release(version="v1", payload="old-checksum")
    assert excluded_deployments([older], booted) == []