# zincati

Building blocks for an operating-system auto-update agent:

- `zincati.machine`: the agent's update state machine,
- `zincati.scheduling`: how long the agent waits between refreshes, and its
  mutable state,
- `zincati.sessions`: detection of interactive user sessions and reboot warnings
  written to their terminals,
- `zincati.notify`: status notifications to the service manager.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The update state machine

`AgentMachineState` holds a `StateKind`, the target `Release` (for the
update-available, staged and finalized states) and a counter. A new state starts
in `StateKind.START`.

```python
import datetime as dt

from zincati.machine import AgentMachineState, Release, StateKind

release = Release(version="v1", payload="ostree-checksum")

state = AgentMachineState()
state.initialized()
state.reported_steady()
state.no_new_update()
state.update_available(release)   # counter: failed deploy attempts, starts at 0
state.update_staged(release)      # counter: postponements left, starts at 10
state.update_finalized(release)
state.end()
assert state.kind is StateKind.END
```

The transitions `initialized`, `reported_steady`, `no_new_update` and
`update_available` are only allowed from their expected states; any other call
raises `InvalidTransition`. `record_failed_deploy` (only in the update-available
state) returns `(abandoned, fail_count)`; after `MAX_DEPLOY_ATTEMPTS` (12)
failures in a row the update is abandoned and the state goes back to
`NO_NEW_UPDATE`.

`get_refresh_delay(steady_interval)` returns the pause before the next refresh,
as a `timedelta`, and whether jitter should be added to it.

### Interactive sessions and postponement

While an update is staged, `usersessions_can_finalize()` lists the interactive
sessions and passes them to `handle_interactive_sessions(sessions)`, which
returns whether finalization may go ahead:

- with no sessions, or when `/run/zincati/override-interactive-check` exists, it
  may;
- once no postponements are left, it may;
- otherwise it may not. The sessions get a broadcast warning when the grace
  period starts and again when one postponement is left.

`record_postponement()` uses up one postponement. If the sessions cannot be
listed, nobody is assumed to be logged in.

The counters the machine keeps (time of the latest state change, postponed
finalizations, detected active users) are in `zincati.machine.METRICS`.

## Refresh scheduling

```python
from zincati.scheduling import UpdateAgentState, refresh_delay, should_tick_immediately

prev = AgentMachineState(StateKind.REPORTED_STEADY)
cur = AgentMachineState(StateKind.NO_NEW_UPDATE)
should_tick_immediately(prev, cur)                          # False
refresh_delay(dt.timedelta(seconds=300), prev, cur)         # 300 to 330 seconds
```

Any change of state kind calls for an immediate refresh (`refresh_delay` returns
`None`), except the move from reported-steady to no-new-update. `add_jitter`
adds 0% to 10% of a period, in whole seconds, so that clients do not all refresh
at the same moment. `excluded_deployments(deployments, booted)` returns the
finalized deployments other than the booted one, sorted; these should not be
picked as update targets and can go in `UpdateAgentState.denylist`.

## Sessions and warnings

- `get_interactive_user_sessions()` runs `loginctl list-sessions --json=short`
  and returns an `InteractiveSession` for every session that has a tty. It raises
  `RuntimeError` if `loginctl` cannot be run, fails, or prints output it cannot
  understand.
- `broadcast(msg, sessions)` writes a message to every session's tty and returns
  how many writes succeeded.
- `format_seconds(65)` returns `"1 minute and 5 seconds"`.
- `format_reboot_warning(seconds, release_version)` returns the text of the
  reboot warning.

## Service-manager notifications

`update_unit_status(status)`, `notify_ready()`, `notify_stopping()` and the
general `sd_notify(states)` send `KEY=VALUE` lines to the socket named by the
`NOTIFY_SOCKET` environment variable (a path, or an abstract socket starting with
`@`). They never raise: failures are logged and the functions return `False`.

## What this package does not do

It has no command and no long-running agent. It does not look for, download,
stage or finalize updates itself, and it does not reboot the machine: the caller
drives the state machine and does that work. It has no update strategies and no
weekly maintenance windows to decide when finalization is allowed.