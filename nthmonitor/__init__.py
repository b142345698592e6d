"""Monitors that turn instance metadata notices and queued cloud events into interruption events."""

__version__ = "0.1.0"