"""
Temporary file housekeeping.

Pipeline runs clean up after themselves; ``cleanup_all_temp_files`` is the
independent sweep an operator can trigger for anything left behind by a
killed process.
"""

import logging
import os
import shutil
import tempfile
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def create_work_dir(temp_dir: str, prefix: str = "job_") -> str:
    """Create and return a private working directory under ``temp_dir``."""
    os.makedirs(temp_dir, exist_ok=True)
    work_dir = tempfile.mkdtemp(prefix=prefix, dir=temp_dir)
    logger.debug("Created work directory %s", work_dir)
    return work_dir


def remove_work_dir(work_dir: Optional[str]) -> None:
    """Delete a working directory and everything in it."""
    if not work_dir or not os.path.exists(work_dir):
        return
    shutil.rmtree(work_dir, ignore_errors=True)
    if os.path.exists(work_dir):
        logger.error("Work directory %s could not be fully removed", work_dir)
    else:
        logger.debug("Removed work directory %s", work_dir)


def cleanup_files(paths: Iterable[Optional[str]]) -> int:
    """Delete the given files, skipping missing ones. Returns the count removed."""
    removed = 0
    for path in paths:
        if not path or not os.path.exists(path):
            continue
        try:
            os.remove(path)
            removed += 1
            logger.debug("Removed temporary file %s", path)
        except OSError as exc:
            logger.error("Could not remove temporary file %s: %s", path, exc)
    return removed


def cleanup_all_temp_files(temp_dir: str) -> int:
    """Delete every file and directory inside ``temp_dir``."""
    if not os.path.isdir(temp_dir):
        logger.info("Temp directory %s does not exist; nothing to clean", temp_dir)
        return 0

    removed = 0
    for name in os.listdir(temp_dir):
        path = os.path.join(temp_dir, name)
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            removed += 1
        except OSError as exc:
            logger.error("Could not remove %s: %s", path, exc)

    logger.info("Temp sweep of %s removed %d entries", temp_dir, removed)
    return removed
