from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "info") -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    # sshd runs with -e, so keep our lines on the same stream as its own.
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
