"""Echo delivery worker: dispatches scheduled and life-check messages."""

__version__ = "0.1.0"
