import logging
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from .decode import EegBands, Sample
from .utils import get_utc_timestamp, parse_utc_timestamp, utc_now

logger = logging.getLogger(__name__)

# Once-per-second series, in the order the headset reports them
ESENSE_SERIES = EegBands.FIELDS + ("signal_quality", "attention", "meditation", "blink")
WAVE_SERIES = ("wave",)
SERIES = ESENSE_SERIES + WAVE_SERIES

_DTYPES = {
    **{name: np.uint32 for name in EegBands.FIELDS},
    "signal_quality": np.uint8,
    "attention": np.uint8,
    "meditation": np.uint8,
    "blink": np.uint8,
    "wave": np.int16,
}


@dataclass
class CaptureSession:
    """
    Samples captured from a headset, collected by series.

    Filled by append() while capturing; finalize() stamps ``end_ts`` once and
    freezes the store. EegBands samples are split across the eight band series.
    """

    start_ts: datetime = field(default_factory=utc_now)
    end_ts: Optional[datetime] = None
    delta: List[int] = field(default_factory=list)
    theta: List[int] = field(default_factory=list)
    lo_alpha: List[int] = field(default_factory=list)
    hi_alpha: List[int] = field(default_factory=list)
    lo_beta: List[int] = field(default_factory=list)
    hi_beta: List[int] = field(default_factory=list)
    lo_gamma: List[int] = field(default_factory=list)
    mid_gamma: List[int] = field(default_factory=list)
    signal_quality: List[int] = field(default_factory=list)
    attention: List[int] = field(default_factory=list)
    meditation: List[int] = field(default_factory=list)
    blink: List[int] = field(default_factory=list)
    wave: List[int] = field(default_factory=list)

    @property
    def finalized(self) -> bool:
        return self.end_ts is not None

    def append(self, samples: Iterable[Sample]) -> int:
        """Add samples to their series; returns how many samples were added."""
        if self.finalized:
            raise RuntimeError("capture session is finalized")
        n = 0
        for sample in samples:
            for name, value in sample.series():
                getattr(self, name).append(value)
            n += 1
        return n

    def finalize(self, end_ts: Optional[datetime] = None) -> "CaptureSession":
        if self.finalized:
            raise RuntimeError("capture session is already finalized")
        self.end_ts = end_ts or utc_now()
        return self

    def series(self, name: str) -> List[int]:
        if name not in SERIES:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "start_ts": get_utc_timestamp(self.start_ts),
            "end_ts": get_utc_timestamp(self.end_ts) if self.end_ts else None,
        }
        for name in SERIES:
            data[name] = list(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "CaptureSession":
        """Rebuild a capture from to_dict() output. Missing series are empty."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug("Ignoring unknown capture keys: %s", sorted(unknown))
        capture = cls(
            start_ts=parse_utc_timestamp(data.get("start_ts")) or utc_now(),
            end_ts=parse_utc_timestamp(data.get("end_ts")),
        )
        for name in SERIES:
            values = data.get(name) or []
            getattr(capture, name).extend(int(v) for v in values)
        return capture

    def as_arrays(self) -> Dict[str, np.ndarray]:
        """Each series as a numpy array with its wire dtype."""
        return {name: np.asarray(getattr(self, name), dtype=_DTYPES[name]) for name in SERIES}

    def to_dataframes(self) -> Dict[str, pd.DataFrame]:
        """
        Two DataFrames: "wave" (512 Hz raw samples) and "esense" (one row per
        second with the band powers, signal quality, eSense values and blink).
        Series of unequal length are padded with NaN in the "esense" frame.
        """
        arrays = self.as_arrays()
        wave = pd.DataFrame({"wave": arrays["wave"]})
        esense = pd.DataFrame({name: pd.Series(arrays[name]) for name in ESENSE_SERIES})
        return {"wave": wave, "esense": esense}


def record(
    session,
    seconds: Optional[float] = None,
    count: Optional[int] = None,
    interval: float = 0.125,
) -> CaptureSession:
    """
    Poll a session and collect what it reads into a CaptureSession.

    Works with a DeviceSession, a ReplaySession or a SessionProxy. The session
    must be connected; it is started if needed. Capture ends after ``seconds``
    or once ``count`` samples have been collected, whichever comes first, or
    when the session stops running on its own (lost stream).

    Parameters
    - session: connected session to poll.
    - seconds: capture duration in seconds.
    - count: number of samples to collect.
    - interval: pause between polls in seconds.
    """
    if seconds is None and count is None:
        raise ValueError("either seconds or count must be given")
    if seconds is not None and seconds <= 0:
        raise ValueError("seconds must be positive")
    if count is not None and count <= 0:
        raise ValueError("count must be positive")

    if not session.is_running:
        session.start()

    capture = CaptureSession()
    start = time.monotonic()
    n = 0
    while True:
        n += capture.append(session.read_batch())
        if count is not None and n >= count:
            break
        if seconds is not None and time.monotonic() - start >= seconds:
            break
        if not session.is_running:
            logger.warning("Session stopped during capture after %d samples", n)
            break
        time.sleep(interval)

    return capture.finalize()
