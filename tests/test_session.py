"""
Unit tests for DeviceSession.

The serial backend is replaced by a mock whose open() returns FakeSerial, an
in-memory port that behaves like pyserial with a short read timeout.
"""

import threading
import time
import unittest
from unittest.mock import Mock

import serial

from OpenMindset.decode import Attention, RawWave
from OpenMindset.errors import ConnectError, StreamClosed
from OpenMindset.mindset import Mindset
from OpenMindset.session import DeviceSession, SessionConfig, SessionState


class FakeSerial:
    """Byte queue with pyserial's read(n)/close() surface."""

    def __init__(self, data=b"", timeout=0.01):
        self._data = bytearray(data)
        self._lock = threading.Lock()
        self.timeout = timeout
        self.is_open = True
        self.fail = None

    def feed(self, data):
        with self._lock:
            self._data.extend(data)

    def read(self, size=1):
        if self.fail is not None:
            raise self.fail
        if not self.is_open:
            raise serial.SerialException("Attempting to use a port that is not open")
        with self._lock:
            chunk = bytes(self._data[:size])
            del self._data[:size]
        if not chunk:
            time.sleep(self.timeout)
        return chunk

    def close(self):
        self.is_open = False


def wave_frame(value):
    return Mindset.encode_frame(
        Mindset.encode_row(Mindset.CODE_WAVE, value.to_bytes(2, "big", signed=True))
    )


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestDeviceSession(unittest.TestCase):
    def setUp(self):
        self.port = FakeSerial()
        self.backend = Mock()
        self.backend.open.return_value = self.port
        self.config = SessionConfig(read_timeout=0.05)
        self.session = DeviceSession(self.config, backend=self.backend)

    def tearDown(self):
        self.session.disconnect()

    def collect(self, n, timeout=2.0):
        samples = []

        def enough():
            samples.extend(self.session.read_batch())
            return len(samples) >= n

        wait_for(enough, timeout)
        return samples

    def test_connect_opens_port(self):
        self.session.connect("/dev/rfcomm3")
        self.backend.open.assert_called_once_with(
            "/dev/rfcomm3", baud_rate=57600, timeout=0.05
        )
        self.assertIs(self.session.state, SessionState.CONNECTED)
        self.assertEqual(self.session.address, "/dev/rfcomm3")
        self.assertTrue(self.session.is_connected)
        self.assertFalse(self.session.is_running)

    def test_connect_default_address(self):
        self.session.connect()
        self.assertEqual(self.backend.open.call_args[0][0], Mindset.SERIAL_PORT)

    def test_connect_failure(self):
        self.backend.open.side_effect = serial.SerialException("could not open port")
        with self.assertRaises(ConnectError):
            self.session.connect("/dev/rfcomm9")
        self.assertIs(self.session.state, SessionState.DISCONNECTED)

    def test_connect_twice_rejected(self):
        self.session.connect()
        with self.assertRaises(RuntimeError):
            self.session.connect()

    def test_start_requires_connection(self):
        with self.assertRaises(RuntimeError):
            self.session.start()

    def test_read_loop_fills_batches(self):
        self.session.connect()
        self.session.start()
        self.assertIs(self.session.state, SessionState.RUNNING)
        self.port.feed(b"".join(wave_frame(v) for v in range(5)))

        samples = self.collect(5)
        self.assertEqual(samples, [RawWave(v) for v in range(5)])
        self.assertEqual(self.session.stats["frames"], 5)

    def test_corrupt_frames_do_not_stop_loop(self):
        self.session.connect()
        self.session.start()
        bad = bytearray(wave_frame(1))
        bad[-1] ^= 0x01
        self.port.feed(bytes(bad) + wave_frame(2))

        self.assertEqual(self.collect(1), [RawWave(2)])
        self.assertTrue(self.session.is_running)
        self.assertEqual(self.session.stats["checksum_errors"], 1)

    def test_stop_and_restart(self):
        self.session.connect()
        self.session.start()
        self.session.start()
        self.session.stop()
        self.assertIs(self.session.state, SessionState.STOPPED)
        self.assertTrue(self.session.is_connected)

        self.port.feed(wave_frame(3))
        self.session.start()
        self.assertEqual(self.collect(1), [RawWave(3)])

    def test_stop_when_not_running(self):
        self.session.connect()
        self.session.stop()
        self.assertIs(self.session.state, SessionState.CONNECTED)

    def test_read_frame(self):
        self.session.connect()
        payload = Mindset.encode_row(Mindset.CODE_ATTENTION, b"\x2a")
        self.port.feed(Mindset.encode_frame(payload))
        self.assertEqual(self.session.read_frame(), [Attention(42)])
        self.assertEqual(self.session.read_frame(), [])

    def test_read_frame_rejected_while_running(self):
        self.session.connect()
        self.session.start()
        with self.assertRaises(RuntimeError):
            self.session.read_frame()

    def test_read_frame_requires_connection(self):
        with self.assertRaises(RuntimeError):
            self.session.read_frame()

    def test_read_batch_without_loop(self):
        self.session.connect()
        self.port.feed(wave_frame(1))
        self.assertEqual(self.session.read_batch(), [])

    def test_stream_lost(self):
        self.session.connect()
        self.session.start()
        self.port.fail = serial.SerialException("device reports readiness to read but returned no data")

        self.assertTrue(wait_for(lambda: self.session.state is SessionState.STOPPED))
        self.assertIsInstance(self.session.last_error, StreamClosed)
        with self.assertRaises(StreamClosed):
            self.session.start()

        self.session.disconnect()
        self.assertIs(self.session.state, SessionState.DISCONNECTED)
        self.assertFalse(self.port.is_open)

    def test_read_frame_stream_lost(self):
        self.session.connect()
        self.port.fail = serial.SerialException("device disconnected")
        with self.assertRaises(StreamClosed):
            self.session.read_frame()
        self.assertIs(self.session.state, SessionState.STOPPED)
        self.assertIsInstance(self.session.last_error, StreamClosed)
        with self.assertRaises(StreamClosed):
            self.session.start()

    def test_disconnect_is_idempotent(self):
        self.session.connect()
        self.session.start()
        self.session.disconnect()
        self.session.disconnect()
        self.assertIs(self.session.state, SessionState.DISCONNECTED)
        self.assertFalse(self.port.is_open)

    def test_reconnect_after_disconnect(self):
        self.session.connect()
        self.session.disconnect()
        self.port = FakeSerial(wave_frame(8))
        self.backend.open.return_value = self.port
        self.session.connect()
        self.assertEqual(self.session.read_frame(), [RawWave(8)])

    def test_context_manager(self):
        with DeviceSession(self.config, backend=self.backend) as session:
            session.connect()
            session.start()
        self.assertIs(session.state, SessionState.DISCONNECTED)
        self.assertFalse(self.port.is_open)


class TestConcurrentStop(unittest.TestCase):
    """stop() and start() racing a stop already in progress, over a port that blocks 0.5 s per read."""

    def setUp(self):
        self.port = FakeSerial(timeout=0.5)
        backend = Mock()
        backend.open.return_value = self.port
        self.session = DeviceSession(SessionConfig(read_timeout=0.5), backend=backend)
        self.session.connect()
        self.session.start()
        self.addCleanup(self.session.disconnect)

    def stop_in_background(self):
        stopper = threading.Thread(target=self.session.stop)
        stopper.start()
        wait_for(lambda: self.session._stopping, timeout=1.0)
        return stopper

    def test_second_stop_waits_for_loop(self):
        loop = self.session._thread
        stopper = self.stop_in_background()
        self.session.stop()
        self.assertFalse(loop.is_alive())
        self.assertIs(self.session.state, SessionState.STOPPED)
        stopper.join()
        self.assertIs(self.session.state, SessionState.STOPPED)

    def test_start_during_stop_is_not_lost(self):
        old_loop = self.session._thread
        stopper = self.stop_in_background()
        self.session.start()
        stopper.join()
        self.assertFalse(old_loop.is_alive())
        self.assertIs(self.session.state, SessionState.RUNNING)
        self.assertTrue(self.session._thread.is_alive())

        self.port.feed(wave_frame(4))
        self.assertTrue(wait_for(lambda: len(self.session._buffer) == 1))
        self.assertEqual(self.session.read_batch(), [RawWave(4)])


class TestSessionConfig(unittest.TestCase):
    def test_defaults(self):
        config = SessionConfig()
        self.assertEqual(config.baud_rate, 57600)
        self.assertEqual(config.sync_retries, 500)

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            SessionConfig(read_timeout=0)
        with self.assertRaises(ValueError):
            SessionConfig(sync_retries=-1)


if __name__ == "__main__":
    unittest.main()
