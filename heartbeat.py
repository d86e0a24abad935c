"""
Heartbeat gate.

The heartbeat file's modification time records when a notification was last
judged due. Its content is never read.

The gate also leaves a `<heartbeat file>.lock` beside it, used only to
serialize overlapping runs. It holds no state and may be deleted between runs.
"""
import os
import time
from datetime import timedelta
from typing import Optional

from filelock import FileLock, Timeout

# Seconds to wait for a concurrent run to release the heartbeat lock
LOCK_TIMEOUT = float(os.getenv("HEARTBEAT_LOCK_TIMEOUT", "30"))


class HeartbeatError(RuntimeError):
    """The heartbeat file could not be read or updated. Aborts the run."""


def effective_interval(alert_active: bool, normal: timedelta, alert: timedelta) -> timedelta:
    return alert if alert_active else normal


def heartbeat_age(path: str) -> Optional[timedelta]:
    """Age of the heartbeat file, or None if it does not exist."""
    try:
        mtime = os.stat(path).st_mtime
    except FileNotFoundError:
        return None
    except OSError as e:
        raise HeartbeatError(f"Failed to stat heartbeat file {path}: {e}") from e
    return timedelta(seconds=time.time() - mtime)


def timestamp_older_than(path: str, interval: timedelta) -> bool:
    """
    Return True if a notification is due, touching the heartbeat file.

    A missing heartbeat file is created and counts as due. Otherwise the
    notification is due once the file is at least `interval` old, in which
    case its mtime is moved to now. When not due the file is left alone.

    The check and the touch happen under an exclusive lock on
    `<path>.lock`, so two overlapping runs cannot both see the same old
    timestamp.
    """
    lock = FileLock(path + ".lock", timeout=LOCK_TIMEOUT)
    try:
        with lock:
            return _check_and_touch(path, interval)
    except Timeout as e:
        raise HeartbeatError(f"Timed out waiting for lock on {path}: {e}") from e
    except OSError as e:
        raise HeartbeatError(f"Failed to lock heartbeat file {path}: {e}") from e


def _check_and_touch(path: str, interval: timedelta) -> bool:
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        try:
            with open(path, "w"):
                pass
        except OSError as e:
            raise HeartbeatError(f"Failed to create heartbeat file {path}: {e}") from e
        return True
    except OSError as e:
        raise HeartbeatError(f"Failed to stat heartbeat file {path}: {e}") from e

    now = time.time()
    if timedelta(seconds=now - stat.st_mtime) < interval:
        return False

    try:
        os.utime(path, (now, now))
    except OSError as e:
        raise HeartbeatError(f"Failed to update heartbeat file {path}: {e}") from e
    return True
