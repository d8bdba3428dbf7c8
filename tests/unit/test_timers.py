from __future__ import annotations

import io
import warnings
from concurrent.futures import ThreadPoolExecutor

import pytest

from beliefnets.timers import MAX_TIMERS, NullTimerRegistry, TimerRegistry, duration_str


def test_duration_str_picks_unit_by_magnitude():
    assert duration_str(500) == "500ns"
    assert duration_str(1500) == "1.5us"
    assert duration_str(2_500_000) == "2.5ms"
    assert duration_str(3_000_000_000) == "3s"
    assert duration_str(1_234_567_891) == "1.23457s"


def test_record_accumulates_count_and_duration():
    timers = TimerRegistry()
    assert timers.record("fine_tune", 100)
    assert timers.record("fine_tune", 50)
    entry = timers.get("fine_tune")
    assert entry is not None
    assert entry.count == 2
    assert entry.duration == 150


def test_concurrent_records_are_counted_exactly():
    timers = TimerRegistry()
    per_thread = 500
    threads = 8

    def _work(_: int) -> None:
        for i in range(per_thread):
            timers.record("batch", 1)
            timers.record(f"label-{i % 4}", 2)

    with ThreadPoolExecutor(max_workers=threads) as pool:
        list(pool.map(_work, range(threads)))

    assert timers.get("batch").count == per_thread * threads
    assert timers.get("batch").duration == per_thread * threads
    assert sum(timers.get(f"label-{i}").count for i in range(4)) == per_thread * threads
    assert len(timers.entries()) == 5


def test_full_table_drops_and_warns_once_per_name():
    timers = TimerRegistry(capacity=2)
    assert timers.record("a", 1)
    assert timers.record("b", 1)
    with pytest.warns(RuntimeWarning, match="Unable to register timer c"):
        assert not timers.record("c", 1)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert not timers.record("c", 1)
        assert timers.record("a", 1)
    assert timers.get("c") is None
    assert timers.get("a").count == 2


def test_default_capacity():
    assert TimerRegistry().capacity == MAX_TIMERS == 32


def test_time_context_manager_and_dump():
    timers = TimerRegistry()
    with timers.time("pretrain"):
        pass
    with timers.time("pretrain"):
        pass
    out = io.StringIO()
    timers.dump(out)
    line = out.getvalue().strip()
    assert line.startswith("pretrain(2) : ")
    assert line.endswith("s")


def test_time_records_even_when_the_block_raises():
    timers = TimerRegistry()
    with pytest.raises(RuntimeError):
        with timers.time("failing"):
            raise RuntimeError("boom")
    assert timers.get("failing").count == 1


def test_reset_clears_entries():
    timers = TimerRegistry()
    timers.record("x", 1)
    timers.reset()
    assert timers.entries() == []


def test_null_registry_records_nothing():
    timers = NullTimerRegistry()
    with timers.time("anything"):
        pass
    assert timers.record("other", 5)
    assert timers.entries() == []
