from blelight_core.util import Debouncer, clamp
from tests.helpers.util import FakeClock


def test_clamp():
    assert clamp(0, 1, 100) == 1
    assert clamp(500, 1, 100) == 100
    assert clamp(-3, 1, 100) == 1
    assert clamp(55, 1, 100) == 55


def test_debouncer_suppresses_identical_value_in_window():
    clock = FakeClock()
    calls = []
    debounced = Debouncer(calls.append, 0.5, clock)

    assert debounced("30") is True
    clock.advance(0.2)
    assert debounced("30") is False
    assert calls == ["30"]


def test_debouncer_passes_new_value_and_restarts_window():
    clock = FakeClock()
    calls = []
    debounced = Debouncer(calls.append, 0.5, clock)

    debounced("30")
    clock.advance(0.1)
    assert debounced("31") is True
    clock.advance(0.1)
    assert debounced("30") is True
    assert calls == ["30", "31", "30"]


def test_debouncer_window_expires():
    clock = FakeClock()
    calls = []
    debounced = Debouncer(calls.append, 1.0, clock)

    debounced(1)
    clock.advance(1.0)
    assert debounced(1) is True
    debounced.reset()
    assert debounced(1) is True
    assert calls == [1, 1, 1]
