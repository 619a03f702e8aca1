#!/usr/bin/env python3
"""
Tests for Source Selector
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from ingress_uploader.source_selector import DiskSummarizer, ReportingMode

T0 = 1700000000


def since(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def touch(path, mtime, data=b"x"):
    path.write_bytes(data)
    os.utime(path, (mtime, mtime))
    return path


def drain(selector, watermark):
    names = []
    while True:
        stream, found = selector.summary(watermark)
        if not found:
            return names
        with stream:
            names.append(Path(stream.name).name)


@pytest.fixture
def two_reports(report_dir):
    touch(report_dir / "report-1.tar.gz", T0 + 10)
    touch(report_dir / "report-2.tar.gz", T0 + 20)
    return report_dir


def test_latest_yields_only_newest(two_reports):
    """Test LATEST returns report-2 once per cycle"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.LATEST)

    assert drain(selector, since(T0)) == ["report-2.tar.gz"]


def test_all_yields_newest_first(two_reports):
    """Test ALL_SINCE_LAST_REPORTING returns both, newest first"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.ALL_SINCE_LAST_REPORTING)

    assert drain(selector, since(T0)) == ["report-2.tar.gz", "report-1.tar.gz"]


def test_mode_accepts_config_strings(two_reports):
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", "all")
    assert selector.reporting_mode == ReportingMode.ALL_SINCE_LAST_REPORTING


def test_watermark_is_exclusive(two_reports):
    """Test files modified at exactly the watermark are skipped"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.ALL_SINCE_LAST_REPORTING)

    assert drain(selector, since(T0 + 10)) == ["report-2.tar.gz"]


def test_none_watermark_selects_everything(two_reports):
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.ALL_SINCE_LAST_REPORTING)

    assert len(drain(selector, None)) == 2


def test_nothing_after_watermark(two_reports):
    """Test no candidates is (None, False), not an error"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz")

    assert selector.summary(since(T0 + 100)) == (None, False)


def test_prefix_suffix_and_directories_filtered(report_dir):
    """Test only regular files matching prefix and suffix are candidates"""
    touch(report_dir / "insights-a.tar.gz", T0 + 1)
    touch(report_dir / "other-b.tar.gz", T0 + 2)
    touch(report_dir / "insights-c.zip", T0 + 3)
    (report_dir / "insights-dir.tar.gz").mkdir()

    selector = DiskSummarizer(str(report_dir), "insights-", ".tar.gz", ReportingMode.ALL_SINCE_LAST_REPORTING)

    assert drain(selector, None) == ["insights-a.tar.gz"]


def test_same_mtime_ordered_by_name_descending(report_dir):
    touch(report_dir / "insights-a.tar.gz", T0)
    touch(report_dir / "insights-b.tar.gz", T0)

    selector = DiskSummarizer(str(report_dir), "insights-", ".tar.gz", ReportingMode.ALL_SINCE_LAST_REPORTING)

    assert drain(selector, None) == ["insights-b.tar.gz", "insights-a.tar.gz"]


def test_exhausted_cycle_stays_exhausted_until_reset(two_reports):
    """Test the cursor is kept across calls until reset()"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.LATEST)

    assert drain(selector, None) == ["report-2.tar.gz"]
    assert drain(selector, None) == []

    selector.reset()
    assert drain(selector, None) == ["report-2.tar.gz"]


def test_reset_picks_up_new_files(two_reports):
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz", ReportingMode.LATEST)
    drain(selector, None)

    touch(two_reports / "report-3.tar.gz", T0 + 30)
    selector.reset()

    assert drain(selector, None) == ["report-3.tar.gz"]


def test_stream_contents(report_dir):
    touch(report_dir / "insights-a.tar.gz", T0, data=b"archive bytes")
    selector = DiskSummarizer(str(report_dir), "insights-", ".tar.gz")

    stream, found = selector.summary(None)
    with stream:
        assert found
        assert stream.read() == b"archive bytes"


def test_missing_directory_raises(temp_dir):
    """Test scan errors propagate to the caller"""
    selector = DiskSummarizer(str(temp_dir / "does-not-exist"), "", ".tar.gz")

    with pytest.raises(OSError):
        selector.summary(None)


def test_open_failure_reported_as_not_found(two_reports, caplog):
    """Test an unreadable candidate ends the cycle and is recorded"""
    selector = DiskSummarizer(str(two_reports), "report-", ".tar.gz")

    with patch("builtins.open", side_effect=PermissionError("permission denied")):
        assert selector.summary(None) == (None, False)

    assert isinstance(selector.last_open_error, PermissionError)
    assert "Cannot open candidate" in caplog.text

    selector.reset()
    assert selector.last_open_error is None
