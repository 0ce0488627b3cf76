from __future__ import annotations

import threading
import time

import pytest
from ledger_categorizer.pmap import p_map, p_map_skip


def test_preserves_input_order() -> None:
    def slow_for_small(n: int) -> int:
        time.sleep(0.01 * (5 - n))
        return n * 10

    assert p_map(range(5), slow_for_small, concurrency=3) == [0, 10, 20, 30, 40]


def test_skipped_items_are_dropped() -> None:
    out = p_map(range(6), lambda n: p_map_skip if n % 2 else n, concurrency=2)
    assert out == [0, 2, 4]


def test_concurrency_is_bounded() -> None:
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def track(n: int) -> int:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.01)
        with lock:
            in_flight -= 1
        return n

    assert p_map(range(12), track, concurrency=3) == list(range(12))
    assert peak <= 3


@pytest.mark.parametrize("concurrency", [0, -1, 1.5])
def test_invalid_concurrency(concurrency) -> None:
    with pytest.raises(ValueError):
        p_map([1], lambda n: n, concurrency=concurrency)


def test_stop_on_error_reraises_first_failure() -> None:
    def boom(n: int) -> int:
        if n == 2:
            raise RuntimeError("bad item")
        return n

    with pytest.raises(RuntimeError, match="bad item"):
        p_map(range(4), boom, concurrency=1)


def test_collects_all_failures() -> None:
    def boom(n: int) -> int:
        if n % 2:
            raise ValueError(f"odd {n}")
        return n

    with pytest.raises(ExceptionGroup) as ei:
        p_map(range(5), boom, concurrency=2, stop_on_error=False)
    assert sorted(str(e) for e in ei.value.exceptions) == ["odd 1", "odd 3"]


def test_empty_input() -> None:
    assert p_map([], lambda n: n, concurrency=4) == []
