"""Unit tests for throttled progress reporting."""

import threading

from coordinator.progress import ThrottledProgress


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_first_update_emits_then_throttles():
    clock = FakeClock()
    calls = []
    progress = ThrottledProgress(1000, lambda done, total: calls.append((done, total)), interval=1.0, clock=clock)

    progress.update(0, 100)
    progress.update(1, 50)
    clock.now += 0.5
    progress.update(0, 200)

    assert calls == [(100, 1000)]

    clock.now += 0.5
    progress.update(1, 80)

    assert calls == [(100, 1000), (280, 1000)]


def test_slots_hold_cumulative_values():
    progress = ThrottledProgress(10, clock=FakeClock())

    progress.update(0, 3)
    progress.update(0, 7)
    progress.update(1, 2)

    assert progress.done == 9


def test_finish_always_emits():
    clock = FakeClock()
    calls = []
    progress = ThrottledProgress(500, lambda done, total: calls.append((done, total)), clock=clock)

    progress.update(0, 100)
    progress.update(0, 500)
    progress.finish()

    assert calls[-1] == (500, 500)


def test_concurrent_updates():
    progress = ThrottledProgress(10 * 1000, interval=0.0)

    def worker(slot):
        for loaded in range(1, 1001):
            progress.update(slot, loaded)

    threads = [threading.Thread(target=worker, args=(slot,)) for slot in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert progress.done == 10 * 1000
