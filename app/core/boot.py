"""
Boot epoch — identifies a single run of the server process.

Credentials issued before the current epoch are rejected, and held
sessions stamped with another epoch are treated as released.  The value
is marked once during application startup; until then it falls back to
import time.
"""

import logging
import time

logger = logging.getLogger(__name__)


def now_sec() -> int:
    """Whole seconds since the Unix epoch (the JWT ``iat`` clock)."""
    return int(time.time())


_boot_sec: int = now_sec()


def mark_boot() -> int:
    """Start a new epoch.  Called from the application lifespan."""
    global _boot_sec
    _boot_sec = now_sec()
    logger.info("Boot epoch set to %s", _boot_sec)
    return _boot_sec


def boot_sec() -> int:
    return _boot_sec
