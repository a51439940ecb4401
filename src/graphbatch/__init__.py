"""Batch resource-graph orchestration for the Meta Marketing API."""

from __future__ import annotations

import logging

__version__ = "1.0.0"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    for noisy in ("urllib3", "requests"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


__all__ = ["configure_logging", "__version__"]
