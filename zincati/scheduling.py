"""Pacing of the update agent's refresh loop and its mutable state."""

from __future__ import annotations

import datetime as _dt
import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field

from zincati.machine import AgentMachineState, Release, StateKind

log = logging.getLogger(__name__)

_ONE_SECOND = _dt.timedelta(seconds=1)


@dataclass
class UpdateAgentState:
    """Read-write state of the update agent: its machine state and denied releases."""

    machine_state: AgentMachineState = field(default_factory=AgentMachineState)
    #: Releases that must never be picked as update targets.
    denylist: set[Release] = field(default_factory=set)


def should_tick_immediately(
    prev_state: AgentMachineState, cur_state: AgentMachineState
) -> bool:
    """Return whether moving from ``prev_state`` to ``cur_state`` warrants an immediate tick.

    Any change of state kind does, except going from ReportedSteady to NoNewUpdate.
    """
    if prev_state.kind is cur_state.kind:
        return False
    return not (
        prev_state.kind is StateKind.REPORTED_STEADY
        and cur_state.kind is StateKind.NO_NEW_UPDATE
    )


def add_jitter(period: _dt.timedelta) -> _dt.timedelta:
    """Add a random amount of jitter (0% to 10%, at least whole seconds) to ``period``.

    This keeps clients from converging to the same phase-locked loop.
    """
    secs = max(0, period // _ONE_SECOND)
    factor = random.randint(0, 10)
    jitter = max(secs // 100, 1) * factor
    return _dt.timedelta(seconds=secs + jitter)


def refresh_delay(
    steady_interval: _dt.timedelta,
    prev_state: AgentMachineState,
    cur_state: AgentMachineState,
) -> _dt.timedelta | None:
    """Return the pause before the next refresh, or ``None`` to refresh right away."""
    if should_tick_immediately(prev_state, cur_state):
        return None

    delay, should_jitter = cur_state.get_refresh_delay(steady_interval)
    if should_jitter:
        delay = add_jitter(delay)
    return delay


def excluded_deployments(
    deployments: Iterable[Release], booted: Release
) -> list[Release]:
    """Return the finalized deployments other than ``booted``, logging each of them.

    These are excluded from being future update targets. If ``booted`` is not
    among the deployments, an error is logged and nothing is returned.
    """
    others = set(deployments)
    if booted not in others:
        log.error("could not find booted deployment in deployments")
        return []
    others.discard(booted)

    excluded = sorted(others)
    if excluded:
        log.info(
            "found %d other finalized deployment%s",
            len(excluded),
            "s" if len(excluded) > 1 else "",
        )
        for release in excluded:
            log.info(
                "deployment %s (%s) will be excluded from being a future update target",
                release.version,
                release.payload,
            )
    else:
        log.debug(
            "no other local finalized deployments found; no update targets will be excluded."
        )
    return excluded