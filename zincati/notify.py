"""Service-manager status notifications over the notification socket."""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Iterable

log = logging.getLogger(__name__)

_NOTIFY_SOCKET_ENV = "NOTIFY_SOCKET"


def _socket_address(path: str) -> str | bytes:
    if path.startswith("@"):
        return b"\0" + path[1:].encode()
    if path.startswith("/"):
        return path
    raise ValueError(f"invalid notification socket path: {path}")


def _send(states: list[str]) -> bool:
    path = os.environ.get(_NOTIFY_SOCKET_ENV)
    if not path:
        return False
    address = _socket_address(path)
    payload = "\n".join(states).encode()
    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
        sock.sendto(payload, address)
    return True


def sd_notify(states: Iterable[str]) -> bool:
    """Send ``KEY=VALUE`` states to the service manager.

    Failures are logged, not raised. Returns whether the message was sent.
    """
    try:
        sent = _send(list(states))
    except (OSError, ValueError) as exc:
        log.error("failed to notify service manager of service status change: %s", exc)
        return False
    if not sent:
        log.error("status notifications not supported for this service")
    return sent


def update_unit_status(status: str) -> bool:
    """Update the unit's status text."""
    return sd_notify([f"STATUS={status}"])


def notify_ready() -> bool:
    """Tell the service manager that start-up is finished and configuration is loaded."""
    return sd_notify(["READY=1"])


def notify_stopping() -> bool:
    """Tell the service manager that the service is stopping."""
    return sd_notify(["STOPPING=1"])