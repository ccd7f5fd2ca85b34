"""
Mindset Payload Decoder
=======================

Decodes the payload of one ThinkGear frame into typed samples.

Payload Structure:
------------------
A frame payload is a sequence of DATA ROWS. Each row is:

    [EXCODE (0x55)]* [CODE (1 byte)] [VLENGTH (1 byte, only if CODE >= 0x80)] [VALUE]

  ├─ EXCODE: Extended-code level prefix. Reserved by the vendor; counted and skipped
  ├─ CODE: Row type (see table below)
  ├─ VLENGTH: Explicit value length, present only for multi-byte codes (>= 0x80)
  └─ VALUE: 1 byte for single-byte codes, VLENGTH bytes otherwise

Known Codes:
------------
  0x02  POOR_SIGNAL   1 byte   unsigned, 0 = good contact, 200 = sensor off
  0x04  ATTENTION     1 byte   unsigned eSense, 0-100 by convention
  0x05  MEDITATION    1 byte   unsigned eSense, 0-100 by convention
  0x16  BLINK         1 byte   unsigned blink strength
  0x80  RAW_WAVE      2 bytes  signed 16-bit big-endian
  0x83  ASIC_EEG     24 bytes  eight unsigned 24-bit big-endian band powers:
                               delta, theta, lo_alpha, hi_alpha,
                               lo_beta, hi_beta, lo_gamma, mid_gamma

Rows with unknown codes are skipped. A row whose declared length runs past the
end of the payload stops decoding; the rows already decoded are kept and the
payload is flagged as truncated.

Output Rates:
-------------
The headset emits one RAW_WAVE row per frame at 512 Hz. POOR_SIGNAL, the eSense
values and ASIC_EEG arrive together in one larger frame once per second.
"""

import logging
import struct
from dataclasses import dataclass
from typing import ClassVar, Iterable, List, NamedTuple, Optional, Tuple, Union

from .errors import FrameTruncated
from .mindset import Mindset

logger = logging.getLogger(__name__)

WAVE_WIDTH = 2
BAND_WIDTH = 3
ASIC_EEG_WIDTH = 8 * BAND_WIDTH


@dataclass(frozen=True)
class _ByteSample:
    value: int
    kind: ClassVar[str] = ""

    def __post_init__(self):
        if not 0 <= self.value <= 0xFF:
            raise ValueError(f"{self.kind} must be an unsigned byte, got {self.value}")

    def series(self) -> Tuple[Tuple[str, int], ...]:
        return ((self.kind, self.value),)


@dataclass(frozen=True)
class SignalQuality(_ByteSample):
    """POOR_SIGNAL level (0 = good contact)."""

    kind: ClassVar[str] = "signal_quality"


@dataclass(frozen=True)
class Attention(_ByteSample):
    """Attention eSense value."""

    kind: ClassVar[str] = "attention"


@dataclass(frozen=True)
class Meditation(_ByteSample):
    """Meditation eSense value."""

    kind: ClassVar[str] = "meditation"


@dataclass(frozen=True)
class Blink(_ByteSample):
    """Blink strength."""

    kind: ClassVar[str] = "blink"


@dataclass(frozen=True)
class RawWave:
    """One raw EEG sample, signed 16-bit."""

    value: int
    kind: ClassVar[str] = "wave"

    def __post_init__(self):
        if not -0x8000 <= self.value <= 0x7FFF:
            raise ValueError(f"wave must be a signed 16-bit value, got {self.value}")

    def series(self) -> Tuple[Tuple[str, int], ...]:
        return (("wave", self.value),)


@dataclass(frozen=True)
class EegBands:
    """ASIC EEG power: eight unsigned 24-bit band magnitudes."""

    delta: int
    theta: int
    lo_alpha: int
    hi_alpha: int
    lo_beta: int
    hi_beta: int
    lo_gamma: int
    mid_gamma: int
    kind: ClassVar[str] = "eeg_bands"
    FIELDS: ClassVar[Tuple[str, ...]] = (
        "delta",
        "theta",
        "lo_alpha",
        "hi_alpha",
        "lo_beta",
        "hi_beta",
        "lo_gamma",
        "mid_gamma",
    )

    def __post_init__(self):
        for name in self.FIELDS:
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFFFF:
                raise ValueError(f"{name} must be an unsigned 24-bit value, got {value}")

    def series(self) -> Tuple[Tuple[str, int], ...]:
        return tuple((name, getattr(self, name)) for name in self.FIELDS)


Sample = Union[SignalQuality, Attention, Meditation, Blink, RawWave, EegBands]

SAMPLE_TYPES = (SignalQuality, Attention, Meditation, Blink, RawWave, EegBands)


@dataclass(frozen=True)
class Frame:
    """A payload lifted off the wire, with the result of its checksum test."""

    payload: bytes
    checksum_ok: bool


class DecodedPayload(NamedTuple):
    samples: List[Sample]
    truncated: bool
    excode_count: int
    unknown_codes: Tuple[int, ...]


def _unpack_band(chunk: bytes) -> int:
    # zero-extend the 24-bit big-endian field to 32 bits
    return struct.unpack(">I", b"\x00" + chunk)[0]


def _unpack_asic_eeg(value: bytes) -> EegBands:
    return EegBands(
        *(
            _unpack_band(value[i : i + BAND_WIDTH])
            for i in range(0, ASIC_EEG_WIDTH, BAND_WIDTH)
        )
    )


def _decode_row(code: int, value: bytes) -> Optional[Sample]:
    """Decode a single data row; None for codes this decoder does not know."""
    if code == Mindset.CODE_SIGNAL_QUALITY:
        return SignalQuality(value[0])
    if code == Mindset.CODE_ATTENTION:
        return Attention(value[0])
    if code == Mindset.CODE_MEDITATION:
        return Meditation(value[0])
    if code == Mindset.CODE_BLINK:
        return Blink(value[0])
    if code == Mindset.CODE_WAVE and len(value) >= WAVE_WIDTH:
        return RawWave(struct.unpack(">h", value[:WAVE_WIDTH])[0])
    if code == Mindset.CODE_ASIC_EEG and len(value) >= ASIC_EEG_WIDTH:
        return _unpack_asic_eeg(value[:ASIC_EEG_WIDTH])
    return None


def parse_payload(payload: bytes) -> DecodedPayload:
    """
    Walk the data rows of a frame payload.

    Parameters:
    -----------
    payload : bytes
        Frame payload, without sync bytes, length byte or checksum.

    Returns:
    --------
    DecodedPayload : the decoded samples in payload order, whether decoding
        stopped early on a truncated row, the number of EXCODE bytes seen, and
        the codes that were skipped as unknown.
    """
    payload = bytes(payload)
    samples: List[Sample] = []
    unknown: List[int] = []
    excodes = 0
    truncated = False
    offset = 0
    end = len(payload)

    while offset < end:
        while offset < end and payload[offset] == Mindset.EXCODE:
            excodes += 1
            offset += 1
        if offset >= end:
            # EXCODE prefix with no code behind it
            truncated = True
            break

        code = payload[offset]
        offset += 1

        if code >= Mindset.MULTIBYTE_CODE:
            if offset >= end:
                truncated = True
                break
            vlen = payload[offset]
            offset += 1
        else:
            vlen = 1

        if offset + vlen > end:
            truncated = True
            break

        value = payload[offset : offset + vlen]
        offset += vlen

        sample = _decode_row(code, value)
        if sample is None:
            unknown.append(code)
        else:
            samples.append(sample)

    return DecodedPayload(samples, truncated, excodes, tuple(unknown))


def decode_frame(payload: bytes, strict: bool = False) -> List[Sample]:
    """
    Decode a frame payload into an ordered list of samples.

    The result depends only on the payload bytes. Unknown codes are skipped.
    When a row is truncated the samples decoded before it are returned and a
    warning is logged; with ``strict=True`` a FrameTruncated carrying those
    samples is raised instead.
    """
    decoded = parse_payload(payload)
    for code in decoded.unknown_codes:
        logger.debug("Unrecognized code: %02X", code)
    if decoded.truncated:
        if strict:
            raise FrameTruncated(
                f"payload of {len(payload)} bytes ends inside a data row",
                decoded.samples,
            )
        logger.warning(
            "Truncated payload (%d bytes): kept %d samples",
            len(payload),
            len(decoded.samples),
        )
    return decoded.samples


def decode_rawdata(payloads: Iterable[bytes]):
    """
    Decode a sequence of frame payloads into a finalized CaptureSession.

    Useful for offline analysis of payloads captured elsewhere. Truncated
    payloads contribute the samples decoded before the truncation.
    """
    from .record import CaptureSession

    capture = CaptureSession()
    for payload in payloads:
        capture.append(parse_payload(payload).samples)
    capture.finalize()
    return capture
