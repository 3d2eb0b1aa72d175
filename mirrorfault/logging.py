"""
Logging for harness runs.

Structured events are rendered as JSON lines on stderr, keeping stdout for
the scenario reports the CLI prints. When a log directory is configured
(``--log-dir`` or ``MIRRORFAULT_LOG_DIR``) the same events are appended to
``<component>.log`` in it. Output captured from the process under test is
logged at DEBUG as ``target_output`` events.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
import structlog.stdlib

from mirrorfault.config import settings


def _add_component(component: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("component", component)
        return event_dict

    return processor


def setup_logging(
    component: str = "harness",
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
) -> Optional[Path]:
    """
    Route structlog events through stdlib logging for one harness component.

    Args:
        component: tag added to every event, and the log file's stem
        level: stdlib level for the root logger
        log_dir: directory for ``<component>.log``; defaults to
            ``settings.log_dir``, and no file is written when both are unset

    Returns:
        Path of the log file, or None when logging to stderr only
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_dir = log_dir if log_dir is not None else settings.log_dir
    log_path: Optional[Path] = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"{component}.log"
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_component(component),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    structlog.get_logger().debug("logging_initialized", log_file=str(log_path) if log_path else None)
    return log_path
