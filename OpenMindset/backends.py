import serial
from serial.tools import list_ports

from .mindset import Mindset


class SerialBackend:
    """Minimal wrapper around pyserial for opening and discovering ports."""

    def open(
        self,
        port: str,
        baud_rate: int = Mindset.BAUD_RATE,
        timeout: float = 1.0,
    ) -> serial.Serial:
        # The headset speaks 8N1 with no flow control
        return serial.Serial(
            port=port,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
        )

    def scan(self):
        return [
            {"name": p.description or p.name, "address": p.device}
            for p in list_ports.comports()
        ]
