"""
Shared counters and periodic progress output.
"""
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Optional, Tuple

from tqdm import tqdm


class CounterArena:
    """
    Named counters shared between threads. Writers only ever call
    increment(); readers take snapshots.
    """

    def __init__(self, *names: str):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = defaultdict(int)
        for name in names:
            self._counts[name] = 0

    def increment(self, name: str, amount: int = 1) -> int:
        with self._lock:
            self._counts[name] += amount
            return self._counts[name]

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)


def estimate_eta(discovered: int, processed: int, elapsed: float) -> Tuple[float, Optional[float]]:
    """
    Returns (rate in items/sec, seconds remaining).
    Remaining is None until a rate can be measured.
    """
    rate = processed / elapsed if elapsed > 0 else 0.0
    if rate <= 0:
        return rate, None
    remaining = max(discovered - processed, 0)
    return rate, remaining / rate


def format_hms(seconds: Optional[float]) -> str:
    if seconds is None:
        return "?:??:??"
    s = int(seconds)
    return f"{s // 3600}:{(s % 3600) // 60:02d}:{s % 60:02d}"


class ProgressReporter(threading.Thread):
    """
    Calls `render()` every `interval` seconds until stopped, then once more
    so the final numbers are shown.
    """

    def __init__(self, render: Callable[[], None], interval: float):
        super().__init__(name="progress", daemon=True)
        self._render = render
        self._interval = interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self._interval):
            self._render()
        self._render()

    def stop(self):
        self._stopped.set()
        if self.is_alive():
            self.join()


class PipelineProgress:
    """Single tqdm line: processed/discovered, rate and ETA."""

    def __init__(self, counters: CounterArena, disable: bool = False):
        self.counters = counters
        self.started = time.monotonic()
        self.bar = tqdm(total=0, desc="Generating", unit="f", disable=disable,
                        bar_format="{desc}: {n_fmt}/{total_fmt} {percentage:3.0f}% {postfix}")

    def render(self):
        snap = self.counters.snapshot()
        discovered = snap.get("discovered", 0)
        processed = snap.get("processed", 0)
        rate, eta = estimate_eta(discovered, processed, time.monotonic() - self.started)

        self.bar.total = discovered
        self.bar.n = processed
        self.bar.set_postfix_str(f"{rate:.2f} f/s, ETA {format_hms(eta)}", refresh=False)
        self.bar.refresh()

    def close(self):
        self.bar.close()


class RootStatusBoard:
    """One tqdm line per storage root showing rows checked so far."""

    def __init__(self, counters: CounterArena, labels: Dict[str, str], disable: bool = False):
        self.counters = counters
        self.bars = {
            key: tqdm(desc=label, unit="rows", position=i, leave=True, disable=disable)
            for i, (key, label) in enumerate(sorted(labels.items(), key=lambda kv: kv[1]))
        }

    def render(self):
        snap = self.counters.snapshot()
        for key, bar in self.bars.items():
            bar.n = snap.get(key, 0)
            bar.refresh()

    def close(self):
        for bar in self.bars.values():
            bar.close()
