import os
import tempfile

import pytest

# Point the ledger at a throwaway SQLite file before crash_round.db is imported
_DB_DIR = tempfile.mkdtemp(prefix="crash_round_test_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/test.db")


class FakeHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def cancelled(self):
        return self._cancelled

    def run(self):
        self._callback(*self._args)


class FakeLoop:
    """
    Manual clock standing in for an asyncio loop: only time() and call_later()
    are used by the engine. advance() fires due callbacks in order.
    """

    EPSILON = 1e-9

    def __init__(self):
        self._now = 0.0
        self._handles = []

    def time(self):
        return self._now

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self._now + delay, callback, args)
        self._handles.append(handle)
        return handle

    def pending(self):
        return [h for h in self._handles if not h.cancelled()]

    def advance(self, seconds):
        target = self._now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target + self.EPSILON]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self._handles.remove(handle)
            self._now = max(self._now, handle.when)
            handle.run()
        self._now = target
        self._handles = self.pending()


@pytest.fixture
def loop():
    return FakeLoop()
