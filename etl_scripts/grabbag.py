"""
This file houses miscellaneous utilities used by many other scripts. Something should be very universal to be put in here. If only used by a couple of files, then stick to copy paste.
"""

import sys
import time


def eprint(arg):
    """Print one argument to stderr"""
    print(arg, file=sys.stderr)


class ProgressTracker:
    """
    Report how many of `total` items have been processed, at most once every `interval` seconds.

    Messages go to stderr via eprint so stdout stays usable for piping results.
    """

    def __init__(self, total: int, label: str, interval: float = 5.0):
        self.total = total
        self.label = label
        self.interval = interval
        self.count = 0
        self.start = time.time()
        self.last_print = self.start

    def add(self, n: int):
        self.count += n
        now = time.time()
        if now - self.last_print >= self.interval:
            self.last_print = now
            eprint(self._status(now))

    def finish(self):
        eprint(f"✓ {self._status(time.time())}")

    def _status(self, now: float) -> str:
        elapsed = now - self.start
        rate = self.count / elapsed if elapsed > 0 else 0.0
        percent = 100 * self.count / self.total if self.total else 100.0
        return f"{self.label}: {self.count}/{self.total} ({percent:.1f}%), {rate:.0f}/s, {elapsed:.2f}s"
