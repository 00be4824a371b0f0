"""
Logging configuration for tally.

Library modules log through `logging.getLogger(__name__)` under the
"tally" logger. The CLI is quiet by default; `--verbose` or TALLY_VERBOSE=1
switches on debug output to stderr, which includes every git command run.
Each repository also keeps an operations log in its git directory.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "tally"
OPS_LOG_NAME = "tally-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Limit tally's console output.

    Args:
        quiet: If True, only warnings and errors. If False, informational too.
    """
    logging.getLogger(LOGGER_NAME).setLevel(logging.WARNING if quiet else logging.INFO)


def enable_debug_mode():
    """Send tally's debug-level logging to stderr."""
    tally_logger = logging.getLogger(LOGGER_NAME)
    tally_logger.setLevel(logging.DEBUG)

    if any(getattr(h, "_tally_debug", False) for h in tally_logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname).1s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    handler._tally_debug = True
    tally_logger.addHandler(handler)


def configure_ops_log(git_dir) -> RotatingFileHandler:
    """Attach the repository's operations log.

    Writes {git_dir}/tally-ops.log (1MB, 3 backups): record creation,
    blob writes, merges and transport. Inside the git directory the log
    is never committed or pushed. Returns the handler so the caller can
    detach it.
    """
    handler = RotatingFileHandler(
        str(Path(git_dir) / OPS_LOG_NAME),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))

    tally_logger = logging.getLogger(LOGGER_NAME)
    tally_logger.addHandler(handler)
    # INFO must reach the file even when the console is quiet
    if tally_logger.level == logging.NOTSET or tally_logger.level > logging.INFO:
        tally_logger.setLevel(logging.INFO)
    return handler
