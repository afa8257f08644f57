# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for datetime utilities."""

from datetime import date, datetime, timedelta, timezone

import pytest

from learnrank.utils.datetime import ensure_utc, iso_week_key, minutes_since, utc_now, week_bounds


class TestIsoWeeks:
    """Tests for ISO week helpers."""

    @pytest.mark.parametrize(
        "day,expected",
        [
            (date(2025, 2, 10), "2025-W07"),
            (date(2025, 2, 16), "2025-W07"),
            (date(2024, 12, 30), "2025-W01"),
            (date(2021, 1, 3), "2020-W53"),
        ],
    )
    def test_week_key(self, day, expected):
        assert iso_week_key(day) == expected

    def test_week_bounds_from_datetime(self):
        start, end = week_bounds(datetime(2025, 2, 12, 23, 59, tzinfo=timezone.utc))

        assert start == date(2025, 2, 10)
        assert end == date(2025, 2, 16)


class TestUtc:
    """Tests for UTC helpers."""

    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is not None

    def test_ensure_utc_naive(self):
        assert ensure_utc(datetime(2025, 1, 1, 12)) == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)

    def test_ensure_utc_converts_offsets(self):
        plus_two = timezone(timedelta(hours=2))

        converted = ensure_utc(datetime(2025, 1, 1, 12, tzinfo=plus_two))

        assert converted.hour == 10
        assert converted.tzinfo == timezone.utc

    def test_ensure_utc_none(self):
        assert ensure_utc(None) is None

    def test_minutes_since(self):
        now = datetime(2025, 1, 1, 12, 30, tzinfo=timezone.utc)

        assert minutes_since(datetime(2025, 1, 1, 12, 0), now) == 30
