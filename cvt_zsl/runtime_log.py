"""
Rank-aware logging for training and evaluation runs.

Only the main process (rank 0) logs at the configured level, to both a file
and the console. Other ranks only log errors.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from cvt_zsl.config import LoggingConfig

_EVENT_LOGGER = logging.getLogger("cvt_zsl.events")


def setup_logging(config: LoggingConfig, rank: int = 0) -> None:
    """Configure root logging for the calling process.

    Args:
        config: LoggingConfig with log_level and log_dir
        rank: Process rank; non-zero ranks are restricted to ERROR
    """
    if rank != 0:
        logging.basicConfig(level=logging.ERROR, force=True)
        return

    log_level = getattr(logging, config.log_level.upper())
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "training.log"),
            logging.StreamHandler(),
        ],
        force=True,
    )
    logging.getLogger(__name__).info("Logging configured (level=%s, dir=%s)", config.log_level, log_dir)


def log_event(event: str, **fields: Any) -> None:
    """Emit one structured event as a sorted JSON line."""
    payload = {"event": event, **fields}
    _EVENT_LOGGER.info(json.dumps(payload, default=str, sort_keys=True))
