"""Constants and helpers shared across Mindset interactions."""

from typing import ClassVar, Iterable


class Mindset:
    """Line parameters, framing bytes and data-row codes of the ThinkGear protocol."""

    SERIAL_PORT: ClassVar[str] = "/dev/rfcomm0"
    BAUD_RATE: ClassVar[int] = 57600

    SYNC: ClassVar[int] = 0xAA
    EXCODE: ClassVar[int] = 0x55
    MAX_PAYLOAD: ClassVar[int] = SYNC - 1

    CODE_SIGNAL_QUALITY: ClassVar[int] = 0x02  # POOR_SIGNAL quality 0-255
    CODE_ATTENTION: ClassVar[int] = 0x04  # ATTENTION eSense 0-100
    CODE_MEDITATION: ClassVar[int] = 0x05  # MEDITATION eSense 0-100
    CODE_BLINK: ClassVar[int] = 0x16  # BLINK strength 0-255
    CODE_WAVE: ClassVar[int] = 0x80  # RAW wave value: 2-byte big-endian 2s-complement
    CODE_ASIC_EEG: ClassVar[int] = 0x83  # ASIC EEG POWER: 8 3-byte big-endian integers

    # Codes at or above this value carry an explicit length byte
    MULTIBYTE_CODE: ClassVar[int] = 0x80

    # Nominal output rates of the headset (samples per second)
    WAVE_RATE: ClassVar[int] = 512
    ESENSE_RATE: ClassVar[int] = 1

    @staticmethod
    def checksum(payload: Iterable[int]) -> int:
        """Return the one's-complement of the low byte of the payload sum."""
        return ~(sum(payload) & 0xFF) & 0xFF

    @staticmethod
    def encode_row(code: int, value: bytes, excodes: int = 0) -> bytes:
        """Encode one data row as ``(EXCODE)* CODE [LEN] VALUE``."""
        if not 0 <= code <= 0xFF:
            raise ValueError("code must fit in one byte")
        if code == Mindset.EXCODE or code == Mindset.SYNC:
            raise ValueError(f"code 0x{code:02X} is reserved")
        prefix = bytes([Mindset.EXCODE] * excodes) + bytes([code])
        if code >= Mindset.MULTIBYTE_CODE:
            if len(value) > 0xFF:
                raise ValueError("value too long for a length byte")
            return prefix + bytes([len(value)]) + bytes(value)
        if len(value) != 1:
            raise ValueError("single-byte codes carry exactly one value byte")
        return prefix + bytes(value)

    @staticmethod
    def encode_frame(payload: bytes) -> bytes:
        """Wrap a payload in sync bytes, a length byte and a checksum."""
        payload = bytes(payload)
        if len(payload) > Mindset.MAX_PAYLOAD:
            raise ValueError(
                f"payload too long ({len(payload)} bytes, max {Mindset.MAX_PAYLOAD})"
            )
        return (
            bytes([Mindset.SYNC, Mindset.SYNC, len(payload)])
            + payload
            + bytes([Mindset.checksum(payload)])
        )
