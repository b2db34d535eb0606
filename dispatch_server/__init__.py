"""HTTP service exposing job enqueueing and dependency readiness."""

__version__ = "1.0.0"
