#!/usr/bin/env python3
"""
Tests for the heartbeat gate: first run, throttling, due and escalation
"""
import os
import time
from datetime import timedelta

import pytest

import heartbeat
from heartbeat import HeartbeatError, effective_interval, heartbeat_age, timestamp_older_than

HOUR = timedelta(hours=1)


def age_file(path, hours: float) -> float:
    """Set the file's mtime `hours` in the past and return that mtime."""
    mtime = time.time() - hours * 3600
    os.utime(path, (mtime, mtime))
    return mtime


@pytest.fixture
def marker(tmp_path):
    return str(tmp_path / "heartbeat")


def test_first_run_is_due_and_creates_marker(marker):
    assert not os.path.exists(marker)
    assert timestamp_older_than(marker, 24 * HOUR) is True
    assert os.path.exists(marker)
    assert os.path.getsize(marker) == 0


def test_second_run_right_after_first_is_not_due(marker):
    assert timestamp_older_than(marker, 24 * HOUR) is True
    assert timestamp_older_than(marker, 24 * HOUR) is False


@pytest.mark.parametrize("age_hours", [0, 1, 12, 23.9])
def test_young_marker_is_not_due_and_untouched(marker, age_hours):
    open(marker, "w").close()
    mtime = age_file(marker, age_hours)

    assert timestamp_older_than(marker, 24 * HOUR) is False
    assert os.stat(marker).st_mtime == pytest.approx(mtime, abs=1e-3)


@pytest.mark.parametrize("age_hours", [24.01, 25, 24 * 30])
def test_old_marker_is_due_and_touched(marker, age_hours):
    open(marker, "w").close()
    age_file(marker, age_hours)

    before = time.time()
    assert timestamp_older_than(marker, 24 * HOUR) is True
    assert os.stat(marker).st_mtime >= before - 1


def test_repeated_not_due_never_mutates(marker):
    open(marker, "w").close()
    mtime = age_file(marker, 2)
    for _ in range(5):
        assert timestamp_older_than(marker, 24 * HOUR) is False
    assert os.stat(marker).st_mtime == pytest.approx(mtime, abs=1e-3)


def test_alert_interval_makes_marker_due(marker):
    """A marker aged between the two intervals is due only under alert."""
    open(marker, "w").close()
    age_file(marker, 3)

    normal, alert = 24 * HOUR, 2 * HOUR
    assert timestamp_older_than(marker, effective_interval(False, normal, alert)) is False
    assert timestamp_older_than(marker, effective_interval(True, normal, alert)) is True


def test_zero_interval_is_always_due(marker):
    open(marker, "w").close()
    age_file(marker, 1)
    assert timestamp_older_than(marker, timedelta(0)) is True
    assert timestamp_older_than(marker, timedelta(0)) is True


def test_effective_interval():
    assert effective_interval(False, 24 * HOUR, HOUR) == 24 * HOUR
    assert effective_interval(True, 24 * HOUR, HOUR) == HOUR


def test_unlockable_marker_is_fatal(tmp_path):
    # The lock file cannot be created under a regular file
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    marker = str(blocker / "heartbeat")

    with pytest.raises(HeartbeatError, match="Failed to lock heartbeat file"):
        timestamp_older_than(marker, HOUR)


def fail_for(path, real):
    """Wrap an os function so it raises PermissionError for `path` only."""
    def wrapper(target, *args, **kwargs):
        if isinstance(target, (str, os.PathLike)) and os.fspath(target) == path:
            raise PermissionError(13, "Permission denied", path)
        return real(target, *args, **kwargs)
    return wrapper


def test_stat_error_is_fatal(marker, monkeypatch):
    open(marker, "w").close()
    monkeypatch.setattr(heartbeat.os, "stat", fail_for(marker, os.stat))

    with pytest.raises(HeartbeatError, match="Failed to stat heartbeat file"):
        timestamp_older_than(marker, HOUR)


def test_create_error_is_fatal(marker, monkeypatch):
    monkeypatch.setattr(heartbeat, "open", fail_for(marker, open), raising=False)

    with pytest.raises(HeartbeatError, match="Failed to create heartbeat file"):
        timestamp_older_than(marker, HOUR)
    assert not os.path.exists(marker)


def test_touch_error_is_fatal_and_leaves_mtime(marker, monkeypatch):
    open(marker, "w").close()
    mtime = age_file(marker, 48)
    monkeypatch.setattr(heartbeat.os, "utime", fail_for(marker, os.utime))

    with pytest.raises(HeartbeatError, match="Failed to update heartbeat file"):
        timestamp_older_than(marker, 24 * HOUR)
    monkeypatch.undo()
    assert os.stat(marker).st_mtime == pytest.approx(mtime, abs=1e-3)


def test_heartbeat_age(marker):
    assert heartbeat_age(marker) is None
    open(marker, "w").close()
    age_file(marker, 5)
    age = heartbeat_age(marker)
    assert timedelta(hours=4, minutes=59) < age < timedelta(hours=5, minutes=1)
