"""
Frame Reader
============

Lifts validated ThinkGear frames off an unreliable byte source.

Frame Structure:
----------------
    [SYNC 0xAA] [SYNC 0xAA] [PLENGTH] [PAYLOAD x PLENGTH] [CHKSUM]

  ├─ PLENGTH: payload length, 0-169. 0xAA itself cannot be told apart from a
  │  further sync byte and is treated as one; anything larger is invalid
  └─ CHKSUM: (~sum(PAYLOAD)) & 0xFF

Recovery:
---------
Bytes are discarded one at a time until two consecutive sync bytes are seen.
The search is bounded by a retry budget so that a silent or garbled stream
yields control back to the caller instead of blocking forever. A frame with an
invalid length or a checksum mismatch is dropped whole, and the next read
resumes the sync search right after it. A timeout partway through a marker or
a frame keeps what was read, and the next read picks up where it stopped.

The source is anything with a pyserial-like ``read(n) -> bytes``. An empty read
is a timeout (no data yet). A source that reports itself closed, or raises
``OSError`` (``serial.SerialException`` included), ends the stream.
"""

import enum
import logging
from dataclasses import asdict, dataclass
from typing import List, NamedTuple, Optional, Sequence

from .decode import Frame, Sample, parse_payload
from .errors import FrameInvalid, StreamClosed, SyncTimeout
from .mindset import Mindset

# Maximum number of bytes examined while hunting for a sync marker
SYNC_RETRIES = 500


class ReadStatus(enum.Enum):
    OK = "ok"
    NO_DATA = "no_data"
    SYNC_TIMEOUT = "sync_timeout"
    INVALID = "invalid"


class ReadResult(NamedTuple):
    status: ReadStatus
    frame: Optional[Frame] = None
    samples: Sequence[Sample] = ()
    truncated: bool = False


@dataclass
class FrameStats:
    frames: int = 0
    invalid_length: int = 0
    checksum_errors: int = 0
    sync_timeouts: int = 0
    truncated: int = 0
    bytes_discarded: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class _NoData(Exception):
    """The source timed out before delivering the requested bytes."""


def validate_frame(raw: bytes) -> Frame:
    """
    Check one complete frame (sync bytes through checksum).

    Returns the Frame on success and raises FrameInvalid when the sync marker,
    length byte or checksum is wrong.
    """
    raw = bytes(raw)
    if len(raw) < 4 or raw[0] != Mindset.SYNC or raw[1] != Mindset.SYNC:
        raise FrameInvalid("missing sync marker")
    plen = raw[2]
    if plen >= Mindset.SYNC:
        raise FrameInvalid(f"Invalid packet size: {plen} bytes")
    if len(raw) != plen + 4:
        raise FrameInvalid(f"frame holds {len(raw) - 4} payload bytes, declared {plen}")
    payload = raw[3 : 3 + plen]
    expected = Mindset.checksum(payload)
    if raw[-1] != expected:
        raise FrameInvalid(f"Packet {expected} != checksum {raw[-1]}")
    return Frame(payload, True)


class FrameReader:
    """Read frames from a byte source and decode their payloads."""

    def __init__(
        self,
        source,
        sync_retries: int = SYNC_RETRIES,
        logger: Optional[logging.Logger] = None,
        verbose: bool = False,
    ):
        if sync_retries <= 0:
            raise ValueError("sync_retries must be positive")
        self.source = source
        self.sync_retries = sync_retries
        self.logger = logger or logging.getLogger(__name__)
        self.stats = FrameStats()
        # per-frame diagnostics are INFO only when verbose
        self._diag_level = logging.INFO if verbose else logging.DEBUG
        # sync bytes seen so far, and the frame being read; both survive a timeout
        self._syncs = 0
        self._plen: Optional[int] = None
        self._partial = b""

    def read(self) -> ReadResult:
        """
        Attempt to read one frame.

        Returns a ReadResult whose status tells the caller whether samples were
        decoded (OK), whether to simply try again (NO_DATA, SYNC_TIMEOUT), or
        that a corrupt frame was dropped (INVALID). Raises StreamClosed when
        the source is gone.
        """
        try:
            frame = self._next_frame()
        except _NoData:
            return ReadResult(ReadStatus.NO_DATA)
        except SyncTimeout as exc:
            self.stats.sync_timeouts += 1
            self.logger.log(self._diag_level, "%s", exc)
            return ReadResult(ReadStatus.SYNC_TIMEOUT)
        except FrameInvalid as exc:
            self.logger.log(self._diag_level, "Dropped frame: %s", exc)
            return ReadResult(ReadStatus.INVALID)

        decoded = parse_payload(frame.payload)
        self.stats.frames += 1
        for code in decoded.unknown_codes:
            self.logger.log(self._diag_level, "Unrecognized code: %02X", code)
        if decoded.truncated:
            self.stats.truncated += 1
            self.logger.warning(
                "Truncated payload (%d bytes): kept %d samples",
                len(frame.payload),
                len(decoded.samples),
            )
        return ReadResult(ReadStatus.OK, frame, decoded.samples, decoded.truncated)

    def read_frame(self) -> List[Sample]:
        """Samples of a single read attempt; empty when no frame was available."""
        return list(self.read().samples)

    def _read_byte(self) -> int:
        return self._read_chunk(1)[0]

    def _read_chunk(self, n: int) -> bytes:
        """Up to n bytes from the source; raises _NoData on a timeout."""
        try:
            chunk = self.source.read(n)
        except (OSError, ValueError) as exc:
            raise StreamClosed(f"read failed: {exc}") from exc
        if not chunk:
            if self._source_closed():
                raise StreamClosed("byte source closed")
            raise _NoData()
        return chunk

    def _source_closed(self) -> bool:
        if getattr(self.source, "closed", False):
            return True
        is_open = getattr(self.source, "is_open", True)
        return is_open is False

    def _sync(self) -> int:
        """Consume bytes through a sync marker and return the length byte."""
        budget = self.sync_retries
        while True:
            byte = self._read_byte()
            if byte == Mindset.SYNC:
                # a third 0xAA is still part of the marker
                self._syncs = min(self._syncs + 1, 2)
            elif self._syncs == 2:
                self._syncs = 0
                return byte
            else:
                # a lone sync byte is discarded with the byte that broke it
                self.stats.bytes_discarded += 1 + self._syncs
                self._syncs = 0
            budget -= 1
            if budget <= 0:
                raise SyncTimeout(f"no sync marker within {self.sync_retries} bytes")

    def _next_frame(self) -> Frame:
        if self._plen is None:
            plen = self._sync()
            if plen >= Mindset.SYNC:
                self.stats.invalid_length += 1
                raise FrameInvalid(f"Invalid packet size: {plen} bytes")
            self._plen = plen
            self._partial = b""

        # payload plus checksum; what arrived before a timeout is kept
        need = self._plen + 1
        while len(self._partial) < need:
            self._partial += self._read_chunk(need - len(self._partial))
        raw, plen = self._partial, self._plen
        self._plen, self._partial = None, b""

        payload, checksum = raw[:plen], raw[plen]
        expected = Mindset.checksum(payload)
        if checksum != expected:
            self.stats.checksum_errors += 1
            raise FrameInvalid(f"Packet {expected} != checksum {checksum}")
        return Frame(payload, True)
