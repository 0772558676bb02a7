from __future__ import annotations

import threading
import time

import pytest

from reconciler.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

KEY = "openshift-machine-api/machine-api-operator"


@pytest.fixture
def queue() -> RateLimitingQueue:
    q = RateLimitingQueue("test")
    yield q
    q.shut_down()


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


def test_rate_limiter_delay_doubles_per_consecutive_failure() -> None:
    limiter = ItemExponentialFailureRateLimiter()

    delays = [limiter.when(KEY) for _ in range(14)]

    assert delays == pytest.approx([0.005 * 2 ** (k - 1) for k in range(1, 15)])
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))
    assert limiter.num_requeues(KEY) == 14


def test_rate_limiter_forget_resets_backoff() -> None:
    limiter = ItemExponentialFailureRateLimiter()
    limiter.when(KEY)
    limiter.when(KEY)

    limiter.forget(KEY)

    assert limiter.num_requeues(KEY) == 0
    assert limiter.when(KEY) == pytest.approx(0.005)


def test_rate_limiter_tracks_keys_independently() -> None:
    limiter = ItemExponentialFailureRateLimiter()
    limiter.when("a/one")
    limiter.when("a/one")

    assert limiter.when("b/two") == pytest.approx(0.005)
    assert limiter.num_requeues("a/one") == 2


def test_rate_limiter_caps_at_max_delay() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=4.0)

    delays = [limiter.when(KEY) for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]


def test_rate_limiter_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError, match="base_delay"):
        ItemExponentialFailureRateLimiter(base_delay=0)
    with pytest.raises(ValueError, match="max_delay"):
        ItemExponentialFailureRateLimiter(base_delay=2, max_delay=1)


# ---------------------------------------------------------------------------
# Queue semantics
# ---------------------------------------------------------------------------


def test_rapid_adds_collapse_into_one_pending_key(queue: RateLimitingQueue) -> None:
    for _ in range(10):
        queue.add(KEY)

    assert len(queue) == 1
    key, shutting_down = queue.get()
    assert key == KEY
    assert shutting_down is False
    assert queue.get(timeout=0.05) == (None, False)


def test_key_is_not_handed_out_twice_while_processing(queue: RateLimitingQueue) -> None:
    queue.add(KEY)
    key, _ = queue.get()

    queue.add(KEY)

    assert len(queue) == 0
    assert queue.get(timeout=0.05) == (None, False)

    queue.done(key)
    assert queue.get(timeout=1) == (KEY, False)


def test_done_without_readd_leaves_queue_empty(queue: RateLimitingQueue) -> None:
    queue.add(KEY)
    key, _ = queue.get()
    queue.done(key)

    assert len(queue) == 0


def test_get_blocks_until_add(queue: RateLimitingQueue) -> None:
    result: dict[str, object] = {}

    def _consume() -> None:
        result["item"] = queue.get(timeout=2)

    consumer = threading.Thread(target=_consume)
    consumer.start()
    time.sleep(0.05)
    queue.add(KEY)
    consumer.join(timeout=2)

    assert result["item"] == (KEY, False)


def test_shut_down_unblocks_waiting_get(queue: RateLimitingQueue) -> None:
    result: dict[str, object] = {}

    def _consume() -> None:
        result["item"] = queue.get()

    consumer = threading.Thread(target=_consume)
    consumer.start()
    time.sleep(0.05)
    queue.shut_down()
    consumer.join(timeout=2)

    assert not consumer.is_alive()
    assert result["item"] == (None, True)


def test_get_returns_immediately_after_shut_down_and_ignores_adds(
    queue: RateLimitingQueue,
) -> None:
    queue.add(KEY)
    queue.shut_down()
    queue.add("other/key")

    assert queue.shutting_down is True
    assert queue.get() == (None, True)


def test_add_after_delivers_once_delay_elapses(queue: RateLimitingQueue) -> None:
    queue.add_after(KEY, 0.05)

    assert len(queue) == 0
    assert queue.get(timeout=1) == (KEY, False)


def test_add_after_keeps_earliest_ready_time(queue: RateLimitingQueue) -> None:
    started = time.monotonic()
    queue.add_after(KEY, 5)
    queue.add_after(KEY, 0.05)

    assert queue.get(timeout=2) == (KEY, False)
    assert time.monotonic() - started < 2


def test_add_rate_limited_uses_backoff_and_counts_requeues(queue: RateLimitingQueue) -> None:
    queue.add_rate_limited(KEY)

    assert queue.num_requeues(KEY) == 1
    assert queue.get(timeout=1) == (KEY, False)

    queue.forget(KEY)
    assert queue.num_requeues(KEY) == 0


def test_concurrent_workers_never_hold_same_key(queue: RateLimitingQueue) -> None:
    in_flight = 0
    max_in_flight = 0
    processed = 0
    lock = threading.Lock()
    stop = threading.Event()

    def _worker() -> None:
        nonlocal in_flight, max_in_flight, processed
        while not stop.is_set():
            key, shutting_down = queue.get(timeout=0.05)
            if shutting_down:
                return
            if key is None:
                continue
            with lock:
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
            time.sleep(0.005)
            with lock:
                in_flight -= 1
                processed += 1
            queue.done(key)

    workers = [threading.Thread(target=_worker) for _ in range(4)]
    for worker in workers:
        worker.start()
    for _ in range(50):
        queue.add(KEY)
        time.sleep(0.001)
    time.sleep(0.1)
    stop.set()
    for worker in workers:
        worker.join(timeout=2)

    assert processed >= 1
    assert max_in_flight == 1
