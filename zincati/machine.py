"""State machine driving the update agent through its update lifecycle."""

from __future__ import annotations

import datetime as _dt
import enum
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from zincati.sessions import (
    InteractiveSession,
    broadcast,
    format_reboot_warning,
    format_seconds,
    get_interactive_user_sessions,
)

log = logging.getLogger(__name__)

#: Default refresh interval for steady state (in seconds).
DEFAULT_STEADY_INTERVAL_SECS = 300

#: Refresh interval for end state (in seconds).
END_INTERVAL_SECS = 10800

#: Default tick/refresh period for the state machine (in seconds).
DEFAULT_REFRESH_PERIOD_SECS = 300

#: Time to postpone finalization when interactive user sessions are detected.
DEFAULT_POSTPONEMENT_TIME_SECS = 60

#: Failed deploy attempts in a row before a target update is abandoned.
MAX_DEPLOY_ATTEMPTS = 12

#: Postponements allowed before finalization is forced regardless of logged-in users.
MAX_FINALIZE_POSTPONEMENTS = 10

#: When this file exists, interactive sessions do not delay finalization.
INTERACTIVE_SESSION_OVERRIDE = "/run/zincati/override-interactive-check"

_U8_MAX = 255


@dataclass
class _MachineMetrics:
    latest_state_change: int = 0
    postponed_finalizations: int = 0
    detected_active_users: int = 0


#: Metrics updated by the state machine.
METRICS = _MachineMetrics()


def _record_state_change() -> None:
    METRICS.latest_state_change = int(time.time())


class InvalidTransition(RuntimeError):
    """Raised when the state machine is asked for a transition it does not allow."""


@dataclass(frozen=True, order=True)
class Release:
    """An OS release: its version, payload reference and optional age index."""

    version: str
    payload: str
    age_index: int | None = None


class StateKind(enum.Enum):
    """The states the update agent can be in."""

    START = "StartState"
    INITIALIZED = "Initialized"
    REPORTED_STEADY = "ReportedSteady"
    NO_NEW_UPDATE = "NoNewUpdate"
    UPDATE_AVAILABLE = "UpdateAvailable"
    UPDATE_STAGED = "UpdateStaged"
    UPDATE_FINALIZED = "UpdateFinalized"
    END = "EndState"


_WITH_RELEASE = frozenset(
    {StateKind.UPDATE_AVAILABLE, StateKind.UPDATE_STAGED, StateKind.UPDATE_FINALIZED}
)


@dataclass
class AgentMachineState:
    """Current state of the agent, with the target release and a counter where relevant.

    In ``UPDATE_AVAILABLE`` the counter is the number of failed deploy attempts
    in a row; in ``UPDATE_STAGED`` it is the number of finalization
    postponements still permitted.
    """

    kind: StateKind = StateKind.START
    release: Release | None = None
    counter: int = 0

    def __post_init__(self) -> None:
        if (self.kind in _WITH_RELEASE) != (self.release is not None):
            raise ValueError(f"state {self.kind.value} and release {self.release!r} do not match")
        if self.kind is StateKind.START:
            _record_state_change()

    def _transition_to(
        self, kind: StateKind, release: Release | None = None, counter: int = 0
    ) -> None:
        if kind is not self.kind:
            _record_state_change()
        self.kind = kind
        self.release = release
        self.counter = counter

    def _require(self, target: StateKind, *allowed: StateKind) -> None:
        if self.kind not in allowed:
            raise InvalidTransition(
                f"transition not allowed: {self!r} to {target.value}"
            )

    def _staged(self, action: str) -> tuple[Release, int]:
        if self.kind is not StateKind.UPDATE_STAGED or self.release is None:
            raise InvalidTransition(f"transition not allowed: {action} on {self!r}")
        return self.release, self.counter

    def initialized(self) -> None:
        """Transition to the Initialized state."""
        self._require(StateKind.INITIALIZED, StateKind.START)
        self._transition_to(StateKind.INITIALIZED)

    def reported_steady(self) -> None:
        """Transition to the ReportedSteady state."""
        self._require(StateKind.REPORTED_STEADY, StateKind.INITIALIZED)
        self._transition_to(StateKind.REPORTED_STEADY)

    def no_new_update(self) -> None:
        """Transition to the NoNewUpdate state."""
        self._require(StateKind.NO_NEW_UPDATE, StateKind.REPORTED_STEADY, StateKind.NO_NEW_UPDATE)
        self._transition_to(StateKind.NO_NEW_UPDATE)

    def update_available(self, release: Release) -> None:
        """Transition to the UpdateAvailable state with a new release."""
        self._require(
            StateKind.UPDATE_AVAILABLE, StateKind.REPORTED_STEADY, StateKind.NO_NEW_UPDATE
        )
        self._transition_to(StateKind.UPDATE_AVAILABLE, release, 0)

    def record_failed_deploy(self) -> tuple[bool, int]:
        """Record a failed deploy attempt.

        Returns whether the target update was abandoned and the total number of
        failed attempts, including this one.
        """
        if self.kind is not StateKind.UPDATE_AVAILABLE or self.release is None:
            raise InvalidTransition(f"transition not allowed: record_failed_deploy on {self!r}")
        fail_count = min(self.counter + 1, _U8_MAX)
        persistent_err = fail_count >= MAX_DEPLOY_ATTEMPTS
        if persistent_err:
            self.update_abandoned()
        else:
            self.deploy_failed(self.release, fail_count)
        return persistent_err, fail_count

    def deploy_failed(self, release: Release, fail_count: int) -> None:
        """Stay in UpdateAvailable after a deploy failure, with a new failure count."""
        self._transition_to(StateKind.UPDATE_AVAILABLE, release, fail_count)

    def update_abandoned(self) -> None:
        """Transition to NoNewUpdate after giving up on the target update."""
        self._transition_to(StateKind.NO_NEW_UPDATE)

    def update_staged(self, release: Release) -> None:
        """Transition to UpdateStaged with all postponements available."""
        self._transition_to(StateKind.UPDATE_STAGED, release, MAX_FINALIZE_POSTPONEMENTS)

    def usersessions_can_finalize(self) -> bool:
        """Return whether logged-in users allow finalization now.

        If sessions cannot be listed, nobody is assumed to be logged in.
        """
        try:
            sessions = get_interactive_user_sessions()
        except RuntimeError as exc:
            log.error("failed to check for interactive sessions: %s", exc)
            log.warning("assuming no active sessions and proceeding anyway")
            sessions = []
        return self.handle_interactive_sessions(sessions)

    def handle_interactive_sessions(self, sessions: Sequence[InteractiveSession]) -> bool:
        """Decide whether finalization may proceed given the interactive sessions.

        Warns the sessions at the start and at the end of the grace period.
        """
        METRICS.detected_active_users = len(sessions)
        log.debug("handling interactive sessions, total: %d", len(sessions))

        if not sessions:
            log.debug("no interactive sessions detected")
            return True

        if Path(INTERACTIVE_SESSION_OVERRIDE).exists():
            log.debug("ignoring interactive sessions due to %s", INTERACTIVE_SESSION_OVERRIDE)
            return True

        release, remaining = self._staged("handle_interactive_sessions")

        if remaining == 0:
            log.warning("reached end of grace period while waiting for interactive sessions")
            return True

        if remaining == MAX_FINALIZE_POSTPONEMENTS:
            max_delay = DEFAULT_POSTPONEMENT_TIME_SECS * MAX_FINALIZE_POSTPONEMENTS
            log.warning(
                "interactive sessions detected, entering grace period (maximum %s)",
                format_seconds(max_delay),
            )
            broadcast(format_reboot_warning(max_delay, release.version), sessions)
        elif remaining == 1:
            log.warning("last attempt to wait for the end of all interactive sessions")
            broadcast(
                format_reboot_warning(DEFAULT_POSTPONEMENT_TIME_SECS, release.version),
                sessions,
            )

        return False

    def record_postponement(self) -> None:
        """Use up one finalization postponement."""
        release, remaining = self._staged("record_postponement")
        METRICS.postponed_finalizations += 1
        self.reboot_postponed(release, max(0, remaining - 1))

    def reboot_postponed(self, release: Release, postponements_remaining: int) -> None:
        """Stay in UpdateStaged with the given number of postponements left."""
        self._transition_to(StateKind.UPDATE_STAGED, release, postponements_remaining)

    def update_finalized(self, release: Release) -> None:
        """Transition to the UpdateFinalized state."""
        self._transition_to(StateKind.UPDATE_FINALIZED, release)

    def end(self) -> None:
        """Transition to the End state."""
        self._transition_to(StateKind.END)

    def get_refresh_delay(self, steady_interval: _dt.timedelta) -> tuple[_dt.timedelta, bool]:
        """Return the delay before the next refresh and whether to add jitter."""
        if self.kind in (StateKind.REPORTED_STEADY, StateKind.NO_NEW_UPDATE):
            return steady_interval, True
        if self.kind is StateKind.UPDATE_STAGED:
            if self.counter < MAX_FINALIZE_POSTPONEMENTS:
                return _dt.timedelta(seconds=DEFAULT_POSTPONEMENT_TIME_SECS), False
            return _dt.timedelta(seconds=DEFAULT_REFRESH_PERIOD_SECS), True
        if self.kind is StateKind.END:
            return _dt.timedelta(seconds=END_INTERVAL_SECS), True
        return _dt.timedelta(seconds=DEFAULT_REFRESH_PERIOD_SECS), True