import pytest

from cross_venue_arbitrage.utils import (
    calculate_percentage,
    floor_to_step,
    format_duration,
    format_profit,
    hour_bucket,
    utc_day,
)


class TestFloorToStep:
    def test_floors_to_lot(self):
        assert floor_to_step(280.9, 1.0) == 280.0
        assert floor_to_step(12.3456, 0.01) == 12.34

    def test_exact_multiples_survive_float_error(self):
        assert floor_to_step(0.3, 0.1) == pytest.approx(0.3)
        assert floor_to_step(350.0 * 0.8, 1.0) == 280.0

    def test_invalid_step(self):
        with pytest.raises(ValueError):
            floor_to_step(10.0, 0)


class TestFormatProfit:
    def test_positive(self):
        assert format_profit(1.234) == "+1.23%"

    def test_zero(self):
        assert format_profit(0.0) == "+0.00%"

    def test_negative(self):
        assert format_profit(-0.5) == "-0.50%"


def test_format_duration():
    assert format_duration(5) == "5.00s"
    assert format_duration(90) == "1.5m"
    assert format_duration(5400) == "1.5h"


def test_calculate_percentage():
    assert calculate_percentage(25, 200) == 12.5
    assert calculate_percentage(1, 0) == 0.0


def test_time_buckets():
    # 2023-11-14T22:13:20Z
    ts = 1_700_000_000.0
    assert utc_day(ts) == "2023-11-14"
    assert hour_bucket(ts) == hour_bucket(ts + 1000)
    assert hour_bucket(ts) != hour_bucket(ts + 3600)
