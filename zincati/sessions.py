"""Interactive user sessions: discovery through loginctl and reboot warnings."""

from __future__ import annotations

import datetime as _dt
import json
import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%a %Y-%m-%d %H:%M:%S %Z"


@dataclass(frozen=True)
class InteractiveSession:
    """A user login session attached to a tty."""

    user: str
    #: Device file of the session's tty.
    tty_dev: str


def get_interactive_user_sessions() -> list[InteractiveSession]:
    """Return the sessions of logged-in users that have a tty, as listed by ``loginctl``.

    Raises ``RuntimeError`` if ``loginctl`` cannot be run, fails, or prints
    output that cannot be understood.
    """
    try:
        result = subprocess.run(
            ["loginctl", "list-sessions", "--json=short"],
            capture_output=True,
            check=False,
        )
    except OSError as exc:
        raise RuntimeError(f"failed to run `loginctl` binary: {exc}") from exc

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        raise RuntimeError(f"`loginctl` failed to list current sessions: {stderr}")

    try:
        entries = json.loads(result.stdout)
        if not isinstance(entries, list):
            raise ValueError("expected a list of sessions")
        parsed = [(entry["user"], entry.get("tty")) for entry in entries]
        if not all(isinstance(user, str) for user, _ in parsed):
            raise ValueError("session user is not a string")
        if not all(tty is None or isinstance(tty, str) for _, tty in parsed):
            raise ValueError("session tty is not a string")
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise RuntimeError(f"failed to deserialize output of `loginctl`: {exc}") from exc

    sessions = []
    for user, tty in parsed:
        if tty is None:
            log.debug("found user %s with no tty, user considered non-interactive", user)
            continue
        sessions.append(InteractiveSession(user=user, tty_dev=f"/dev/{tty}"))
    return sessions


def broadcast(msg: str, sessions: Sequence[InteractiveSession]) -> int:
    """Write ``msg`` to the tty of every session; return how many writes succeeded."""
    now = _dt.datetime.now(_dt.timezone.utc)
    broadcast_msg = (
        f"\nBroadcast message from Zincati at {now.strftime(_TIMESTAMP_FORMAT)}:\n{msg}\n"
    )

    delivered = 0
    for session in sessions:
        log.debug(
            "Attempting to broadcast a message to user %s at %s",
            session.user,
            session.tty_dev,
        )
        try:
            Path(session.tty_dev).write_text(broadcast_msg)
        except OSError as exc:
            log.error("failed to write to %s: %s", session.tty_dev, exc)
            continue
        delivered += 1

    if delivered != len(sessions):
        log.warning(
            "%d interactive sessions found, but only broadcasted to %d",
            len(sessions),
            delivered,
        )
    return delivered


def format_seconds(seconds: int) -> str:
    """Return a human-friendly duration, e.g. 65 becomes ``1 minute and 5 seconds``."""
    minutes, secs = divmod(seconds, 60)
    text = ""
    if minutes >= 1:
        text = f"{minutes} minute{'' if minutes == 1 else 's'}"
        if secs > 0:
            text += " and "
    if secs > 0:
        text += f"{secs} second{'' if secs == 1 else 's'}"
    return text


def format_reboot_warning(seconds: int, release_version: str) -> str:
    """Return a warning about the staged release and the time left until reboot."""
    time_till_reboot = format_seconds(seconds)
    return (
        f"New update {release_version} is available and has been deployed.\n"
        "If permitted by the update strategy, Zincati will reboot into this update when\n"
        f"all interactive users have logged out, or in {time_till_reboot}, whichever comes\n"
        "earlier. Please log out of all active sessions in order to let the auto-update\n"
        "process continue."
    )