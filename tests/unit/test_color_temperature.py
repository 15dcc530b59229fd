import pytest

from blelight_core.color_temperature import (
    MAX_MIREDS,
    MIN_MIREDS,
    mireds_to_percent,
    percent_to_mireds,
)


def test_range_constants():
    assert MIN_MIREDS == 200
    assert MAX_MIREDS == 370


def test_endpoints():
    assert percent_to_mireds(100) == 200
    assert mireds_to_percent(200) == 100
    assert percent_to_mireds(1) == 367
    assert mireds_to_percent(370) == 1


def test_round_trip_within_one_percent():
    for p in range(1, 101):
        back = mireds_to_percent(percent_to_mireds(p))
        assert abs(back - p) <= 1, p


def test_non_numeric_input_raises():
    with pytest.raises(TypeError):
        percent_to_mireds("warm")
    with pytest.raises(TypeError):
        mireds_to_percent(None)
