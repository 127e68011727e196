"""Auto-update agent logic: update state machine, refresh scheduling, sessions and notifications."""

__version__ = "0.1.0"