"""
Replay of captured Mindset data through the live session interface.

Every read ("tick") returns 64 consecutive raw wave samples. Every eighth tick
also returns one EegBands sample and one SignalQuality, Attention, Meditation
and Blink sample. Polled 8 times a second this reproduces the headset's own
cadence: 512 raw samples per second and one eSense/ASIC EEG report per second.
Both series wrap around when exhausted, so a replay runs indefinitely.
"""

import json
import logging
import threading
from typing import List, Optional

from .decode import Attention, Blink, EegBands, Meditation, RawWave, Sample, SignalQuality
from .errors import ConnectError
from .record import ESENSE_SERIES, CaptureSession
from .session import BaseSession, SessionConfig, SessionState

WAVE_CHUNK = 64
TICKS_PER_SECOND = 8

_SCALARS = (
    ("signal_quality", SignalQuality),
    ("attention", Attention),
    ("meditation", Meditation),
    ("blink", Blink),
)


class ReplaySession(BaseSession):
    """
    A session that plays back a CaptureSession instead of reading a headset.

    read_frame() ticks once whenever the session is connected and not
    running; read_batch() ticks once per call while running, and returns
    nothing otherwise, just as a live session with no read loop would.
    """

    def __init__(
        self,
        capture: Optional[CaptureSession] = None,
        config: Optional[SessionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(config, logger)
        self.capture = capture
        self._tick_lock = threading.Lock()
        self._wave_idx = 0
        self._esense_idx = 0
        self._counter = 0
        self._ticks = 0

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "ReplaySession":
        """Load a capture written as JSON (CaptureSession.to_dict() layout)."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls(CaptureSession.from_dict(data), **kwargs)

    @property
    def wave_cursor(self) -> int:
        return self._wave_idx

    @property
    def esense_cursor(self) -> int:
        return self._esense_idx

    @property
    def tick_count(self) -> int:
        return self._ticks

    @property
    def stats(self) -> dict:
        return {
            "ticks": self._ticks,
            "wave_cursor": self._wave_idx,
            "esense_cursor": self._esense_idx,
        }

    def _open(self, address: Optional[str]) -> str:
        if self.capture is None:
            raise ConnectError("no captured data to replay")
        with self._tick_lock:
            self._wave_idx = 0
            self._esense_idx = 0
            self._counter = 0
            self._ticks = 0
        return address or "replay"

    def _close(self) -> None:
        pass

    def _read_once(self) -> List[Sample]:
        return self._tick()

    def read_batch(self) -> List[Sample]:
        if self._state is not SessionState.RUNNING:
            return self._buffer.drain()
        return self._tick()

    def _esense_length(self) -> int:
        return max(len(self.capture.series(name)) for name in ESENSE_SERIES)

    def _esense_samples(self, idx: int) -> List[Sample]:
        capture = self.capture
        samples: List[Sample] = []
        if all(idx < len(capture.series(name)) for name in EegBands.FIELDS):
            samples.append(EegBands(*(capture.series(name)[idx] for name in EegBands.FIELDS)))
        for name, kind in _SCALARS:
            values = capture.series(name)
            if idx < len(values):
                samples.append(kind(values[idx]))
        return samples

    def _tick(self) -> List[Sample]:
        with self._tick_lock:
            wave = self.capture.wave
            samples: List[Sample] = [
                RawWave(v) for v in wave[self._wave_idx : self._wave_idx + WAVE_CHUNK]
            ]
            self._wave_idx += WAVE_CHUNK
            if self._wave_idx >= len(wave):
                self._wave_idx = 0

            if self._counter == TICKS_PER_SECOND - 1:
                length = self._esense_length()
                if length:
                    samples.extend(self._esense_samples(self._esense_idx))
                    self._esense_idx += 1
                    if self._esense_idx >= length:
                        self._esense_idx = 0

            self._counter = (self._counter + 1) % TICKS_PER_SECOND
            self._ticks += 1
            return samples
