"""
structlog configuration shared by the harness, the stub node and the tests.
"""

from __future__ import annotations

import os

import structlog

DEFAULT_LOG_LEVEL = "info"


def configure_logging(level: str | None = None, *, json: bool = False) -> None:
    """Configure structlog for a test run.

    Args:
        level: Minimum level name (debug, info, warning, error). Falls back to
            CAUSAL_LOG_LEVEL, then to "info".
        json: Render one JSON object per line instead of console output.
    """
    level = (level or os.environ.get("CAUSAL_LOG_LEVEL", DEFAULT_LOG_LEVEL)).lower()
    renderer = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL.get(level, 20)
        ),
    )
