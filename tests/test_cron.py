"""Unit tests for the cron helpers."""

from datetime import datetime

from rule_scheduler.services.cron import (
    fixed_time, is_valid_cron, next_fire_in, validate_cron, with_time
)


class TestValidateCron:
    def test_valid_expression_previews_next_runs(self):
        result = validate_cron("0 2 * * *", base_time=datetime(2026, 1, 5, 0, 0))

        assert result.is_valid
        assert result.errors == []
        assert result.next_runs == [
            datetime(2026, 1, 5, 2, 0),
            datetime(2026, 1, 6, 2, 0),
            datetime(2026, 1, 7, 2, 0),
        ]

    def test_wrong_field_count(self):
        result = validate_cron("0 2 * *")
        assert not result.is_valid
        assert "Expected 5 fields, got 4" in result.errors[0]
        assert result.next_runs == []

    def test_out_of_range_value(self):
        assert not validate_cron("0 25 * * *").is_valid

    def test_empty_expression(self):
        assert not validate_cron("").is_valid

    def test_whitespace_is_trimmed(self):
        assert validate_cron("  */15 * * * * ").cron_expression == "*/15 * * * *"

    def test_is_valid_cron(self):
        assert is_valid_cron("0 2 1 * *")
        assert not is_valid_cron("not a cron")


class TestNextFireIn:
    def test_fire_at_window_start_counts(self):
        start = datetime(2026, 1, 5, 2, 0)
        assert next_fire_in("0 2 * * *", start, datetime(2026, 1, 5, 2, 30)) == start

    def test_fire_inside_window(self):
        fire = next_fire_in("*/15 * * * *", datetime(2026, 1, 5, 2, 1), datetime(2026, 1, 5, 2, 31))
        assert fire == datetime(2026, 1, 5, 2, 15)

    def test_no_fire_in_window(self):
        assert next_fire_in("0 2 * * *", datetime(2026, 1, 5, 3, 0), datetime(2026, 1, 5, 3, 30)) is None

    def test_window_end_is_exclusive(self):
        assert next_fire_in("30 2 * * *", datetime(2026, 1, 5, 2, 0), datetime(2026, 1, 5, 2, 30)) is None

    def test_sunday_is_zero(self):
        # 2026-01-04 is a Sunday
        fire = next_fire_in("0 9 * * 0", datetime(2026, 1, 4, 9, 0), datetime(2026, 1, 4, 9, 30))
        assert fire == datetime(2026, 1, 4, 9, 0)


class TestRetiming:
    def test_fixed_time(self):
        assert fixed_time("5 14 * * 1") == (5, 14)
        assert fixed_time("*/15 * * * *") is None
        assert fixed_time("0 1,2 * * *") is None

    def test_with_time(self):
        assert with_time("0 2 * * 1", hour=5) == "0 5 * * 1"
        assert with_time("0 2 * * *", minute=10) == "10 2 * * *"
