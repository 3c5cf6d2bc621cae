import datetime as dt
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from email_engagement.tracking.dedup import DedupEngine
from email_engagement.tracking.events import TrackingEvent

T0 = dt.datetime(2025, 1, 6, 9, 0, tzinfo=dt.timezone.utc)
WINDOW = dt.timedelta(minutes=30)


def open_event(offset_s: float = 0, transport: str = "pixel", contact: str = "C1") -> TrackingEvent:
    return TrackingEvent(
        flow_id="F1",
        step_id="S1",
        contact_id=contact,
        type="open",
        timestamp=T0 + dt.timedelta(seconds=offset_s),
        transport=transport,
    )


def test_repeat_inside_window_is_duplicate() -> None:
    engine = DedupEngine(WINDOW)
    assert engine.classify(open_event(0)) is True
    assert engine.classify(open_event(5)) is False
    assert engine.classify(open_event(29 * 60)) is False


def test_window_boundary_counts_again() -> None:
    engine = DedupEngine(WINDOW)
    assert engine.classify(open_event(0)) is True
    assert engine.classify(open_event(30 * 60)) is True
    # The window restarts at the last unique, not at the last duplicate.
    assert engine.classify(open_event(40 * 60)) is False
    assert engine.classify(open_event(60 * 60)) is True


def test_zero_window_counts_everything() -> None:
    engine = DedupEngine(dt.timedelta(0))
    assert all(engine.classify(open_event(0)) for _ in range(3))
    assert len(engine) == 0


def test_transports_share_one_key() -> None:
    engine = DedupEngine(WINDOW)
    assert engine.classify(open_event(0, "pixel")) is True
    assert engine.classify(open_event(1, "css")) is False
    assert engine.classify(open_event(2, "dns")) is False


def test_open_and_click_are_independent() -> None:
    engine = DedupEngine(WINDOW)
    click = TrackingEvent(
        flow_id="F1",
        step_id="S1",
        contact_id="C1",
        type="click",
        timestamp=T0,
        transport="redirect",
        click_url="https://example.com",
    )
    assert engine.classify(open_event(0)) is True
    assert engine.classify(click) is True
    assert engine.classify(open_event(0, contact="C2")) is True


def test_out_of_order_event_is_duplicate() -> None:
    engine = DedupEngine(WINDOW)
    assert engine.classify(open_event(3600)) is True
    assert engine.classify(open_event(0)) is False


def test_flow_window_override() -> None:
    engine = DedupEngine(WINDOW, window_overrides={"F1": dt.timedelta(seconds=10)})
    assert engine.classify(open_event(0)) is True
    assert engine.classify(open_event(10)) is True
    with pytest.raises(ValueError):
        engine.set_window("F1", dt.timedelta(seconds=-1))


def test_release_rolls_back_unstored_claim() -> None:
    engine = DedupEngine(WINDOW)
    claim = engine.claim(open_event(0))
    assert claim.is_unique
    engine.release(claim)
    assert engine.classify(open_event(1)) is True


def test_release_keeps_previous_unique() -> None:
    engine = DedupEngine(WINDOW)
    assert engine.classify(open_event(0)) is True
    claim = engine.claim(open_event(40 * 60))
    assert claim.is_unique and claim.previous == T0
    engine.release(claim)
    assert engine.classify(open_event(10 * 60)) is False


def test_concurrent_hits_yield_single_unique() -> None:
    engine = DedupEngine(WINDOW)
    n = 32
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def hit(i: int) -> None:
        barrier.wait()
        unique = engine.classify(open_event(i * 0.001))
        with lock:
            results.append(unique)

    threads = [threading.Thread(target=hit, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == n
    assert results.count(True) == 1


def test_warm_and_prune() -> None:
    engine = DedupEngine(WINDOW)
    stored = [
        open_event(0).with_unique(True),
        open_event(5).with_unique(False),
        open_event(0, contact="C2").with_unique(True),
    ]
    assert engine.warm(stored) == 2
    assert engine.classify(open_event(60)) is False

    removed = engine.prune(T0 + dt.timedelta(hours=1))
    assert removed == 2
    assert len(engine) == 0


def test_hits_spaced_beyond_window_are_all_unique() -> None:
    engine = DedupEngine(WINDOW)
    results = [engine.classify(open_event(i * 31 * 60)) for i in range(5)]
    assert results == [True] * 5


def test_expired_keys_are_swept_automatically() -> None:
    engine = DedupEngine(WINDOW, prune_every=3)
    engine.classify(open_event(0, contact="C1"))
    engine.classify(open_event(0, contact="C2"))
    assert len(engine) == 2

    # The third claim sweeps keys whose window has elapsed before storing its own.
    assert engine.classify(open_event(31 * 60, contact="C3")) is True
    assert len(engine) == 1


def test_sweep_can_be_disabled() -> None:
    engine = DedupEngine(WINDOW, prune_every=0)
    for i in range(5):
        engine.classify(open_event(i * 31 * 60, contact=f"C{i}"))
    assert len(engine) == 5
    with pytest.raises(ValueError):
        DedupEngine(WINDOW, prune_every=-1)
