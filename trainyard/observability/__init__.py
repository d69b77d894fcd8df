"""Observability for trainyard: loguru configuration."""

from trainyard.observability.logging import LogConfig, setup_logging, teardown_logging

__all__ = ["LogConfig", "setup_logging", "teardown_logging"]
