"""loguru sinks for the worker process.

Modules never add sinks themselves. They ``logger.bind(component=..., job_id=...)``
and log; the worker calls :func:`setup_logging` once at startup and
:func:`teardown_logging` on exit.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from loguru import logger

LogLevel: TypeAlias = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

# Rendered first and in this order; any other bound key follows alphabetically.
_LEADING_KEYS = ("component", "job_id", "instance_id", "contract_id", "owner_id", "task")


@dataclass(frozen=True, slots=True)
class LogConfig:
    """``[log]`` section.

    ``file = ""`` disables the file sink. ``json = true`` writes one JSON
    object per line there instead of the text layout.
    """

    level: LogLevel = "INFO"
    file: str = ".trainyard/trainyard.log"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10
    json: bool = False


def render_context(extra: dict[str, Any]) -> str:
    keys = [k for k in _LEADING_KEYS if k in extra]
    keys += sorted(k for k in extra if k not in _LEADING_KEYS and not k.startswith("_"))
    if not keys:
        return ""
    return " [" + " ".join(f"{k}={extra[k]}" for k in keys) + "]"


def _patch(record: Any) -> None:
    record["extra"]["_ctx"] = render_context(record["extra"])


_TEXT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line}{extra[_ctx]} - {message}"
_CONSOLE = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <8}</level> "
    "<cyan>{name}</cyan><dim>{extra[_ctx]}</dim> {message}"
)


def setup_logging(config: LogConfig) -> list[int]:
    """Replace all sinks with the configured ones. Returns their handler ids."""
    logger.remove()
    logger.enable("trainyard")
    logger.configure(patcher=_patch)

    ids: list[int] = []
    if config.console:
        ids.append(logger.add(sys.stderr, level=config.level, format=_CONSOLE, colorize=True))
    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        ids.append(logger.add(
            path,
            level=min("DEBUG", config.level, key=lambda name: logger.level(name).no),
            format="{message}" if config.json else _TEXT,
            serialize=config.json,
            rotation=config.rotation,
            retention=config.retention,
            enqueue=True,
            diagnose=False,
        ))
    return ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
