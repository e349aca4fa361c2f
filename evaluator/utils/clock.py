"""
Time source for the transcription job orchestrator.

SystemClock waits on a threading.Event so a run can be cancelled from
another thread. Anything with the same now()/wait() pair can stand in.
"""
import threading
import time


class SystemClock:
    """Wall-clock time"""

    def now(self) -> float:
        return time.time()

    def wait(self, seconds: float, interrupt: threading.Event) -> bool:
        """Sleep up to `seconds`. Returns False if interrupted."""
        if seconds <= 0:
            return not interrupt.is_set()
        return not interrupt.wait(seconds)

