"""Configuration module for the worker process."""

from .settings import WorkerConfig, get_config

__all__ = ["WorkerConfig", "get_config"]
