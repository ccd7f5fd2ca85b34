import threading
from typing import Iterable, List

from .decode import Sample


class SampleBuffer:
    """
    Accumulate decoded samples between consumer polls.

    The read loop appends, any number of callers drain. Both operations hold
    the same lock, so an append is never split across two drains and every
    sample is handed out exactly once, in append order. The buffer is not
    bounded; a consumer that never drains lets it grow.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._samples: List[Sample] = []

    def append(self, samples: Iterable[Sample]) -> None:
        samples = list(samples)
        if not samples:
            return
        with self._lock:
            self._samples.extend(samples)

    def drain(self) -> List[Sample]:
        """Remove and return everything appended since the previous drain."""
        with self._lock:
            samples, self._samples = self._samples, []
        return samples

    def clear(self) -> None:
        with self._lock:
            self._samples = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
