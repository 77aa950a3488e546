import time
from threading import Event

from clinic_backend.core.errors import ResolutionCancelled


class CancellationToken:
    """Cooperative cancellation for read-only resolution work.

    A token is cancelled explicitly through ``cancel()`` or implicitly once its
    deadline passes. Only read work checks it; writes never consult it.
    """

    def __init__(self, timeout_seconds: float | None = None):
        self._event = Event()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ResolutionCancelled(
                'Slot resolution was cancelled before it finished.',
                details={'deadline_passed': self._deadline is not None and time.monotonic() >= self._deadline},
            )
