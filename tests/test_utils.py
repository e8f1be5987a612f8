"""Tests for coercion and batching helpers."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from etl.lib.utils import (
    atomic_write_json,
    batched,
    norm_str,
    parse_timestamp,
    safe_decimal,
    safe_div,
    safe_int,
    split_csv,
)

UTC_NOON = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    @pytest.mark.parametrize("value", [
        1704888000000,
        "1704888000000",
        1704888000,
        "2024-01-10T12:00:00Z",
        "2024-01-10T12:00:00.000+00:00",
        datetime(2024, 1, 10, 12, 0),
    ])
    def test_formats(self, value):
        assert parse_timestamp(value) == UTC_NOON

    @pytest.mark.parametrize("value", [None, "", "soon", True])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestCoercion:
    def test_norm_str(self):
        assert norm_str("  x ") == "x"
        assert norm_str("   ") is None
        assert norm_str(["a", "b"]) == "a,b"

    def test_safe_decimal(self):
        assert safe_decimal("1500.25") == Decimal("1500.25")
        assert safe_decimal("") == Decimal("0")
        assert safe_decimal("n/a") == Decimal("0")
        assert safe_decimal("NaN") == Decimal("0")

    def test_safe_int(self):
        assert safe_int("3.9") == 3
        assert safe_int(None, default=-1) == -1

    def test_safe_div(self):
        assert safe_div(1, 4) == 0.25
        assert safe_div(5, 0) == 0.0

    def test_split_csv(self):
        assert split_csv(" a, ,b ") == ["a", "b"]
        assert split_csv(None) == []


class TestBatched:
    def test_chunks(self):
        assert list(batched(range(5), 2)) == [[0, 1], [2, 3], [4]]
        assert list(batched([], 3)) == []

    def test_bad_size(self):
        with pytest.raises(ValueError):
            list(batched([1], 0))


class TestAtomicWrite:
    def test_writes_and_creates_dirs(self, tmp_path):
        path = tmp_path / "nested" / "out.json"
        assert atomic_write_json({"when": UTC_NOON, "amount": Decimal("1.5")}, path) is True
        assert '"amount": "1.5"' in path.read_text()
        assert not path.with_suffix(".json.tmp").exists()
