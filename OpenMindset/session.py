"""
Mindset Sessions
================

A session owns one connection to a headset and the machinery that turns its
byte stream into batches of samples for a polling consumer.

Lifecycle:
----------
    DISCONNECTED --connect()--> CONNECTING --> CONNECTED --start()--> RUNNING
    RUNNING --stop()--> STOPPED --start()--> RUNNING
    CONNECTED / RUNNING / STOPPED --disconnect()--> DISCONNECTED

Threading:
----------
start() spawns one reader thread that loops over FrameReader.read() and
appends decoded samples to a SampleBuffer. Consumers call read_batch() from
any thread to drain the buffer. The loop checks a stop flag between reads, so
stop() waits for at most one serial read timeout plus one decode.

Lifecycle calls serialize on a lock guarding the state and the running flag;
the buffer has its own lock. The only way the loop ends on its own is a lost
stream (StreamClosed), which leaves the session STOPPED with ``last_error``
set. Corrupt frames are dropped and reading continues.

stop() may be called from any thread. Concurrent callers all join the same
reader thread, and a start() issued while a stop is in progress waits for it.

read_frame() bypasses the loop for request/response style polling. It is
rejected while the loop is running, since the stream cannot serve two readers.
A lost stream seen by read_frame() leaves the session STOPPED, as in the loop.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

import serial

from .backends import SerialBackend
from .buffer import SampleBuffer
from .decode import Sample
from .errors import ConnectError, StreamClosed
from .mindset import Mindset
from .reader import SYNC_RETRIES, FrameReader, ReadStatus

# Serial read timeout in seconds: bounds how long stop() can wait for the loop
READ_TIMEOUT = 1.0


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class SessionConfig:
    address: Optional[str] = None
    baud_rate: int = Mindset.BAUD_RATE
    read_timeout: float = READ_TIMEOUT
    sync_retries: int = SYNC_RETRIES
    verbose: bool = False

    def __post_init__(self):
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be positive")
        if self.sync_retries <= 0:
            raise ValueError("sync_retries must be positive")


class BaseSession:
    """State machine and buffer shared by live and replayed sessions."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or SessionConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.RLock()
        self._state_changed = threading.Condition(self._state_lock)
        # bumped by every start(); a stop() only settles the run it stopped
        self._generation = 0
        self._stopping = False
        self._buffer = SampleBuffer()
        self._address: Optional[str] = None
        self._last_error: Optional[Exception] = None

    # ------------------------------------------------------------------
    # Hooks for subclasses

    def _open(self, address: Optional[str]) -> str:
        raise NotImplementedError

    def _close(self) -> None:
        raise NotImplementedError

    def _start_loop(self) -> None:
        pass

    def _request_stop(self):
        return None

    def _wait_stopped(self, handle) -> None:
        pass

    def _read_once(self) -> List[Sample]:
        raise NotImplementedError

    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def is_connected(self) -> bool:
        return self._state in (
            SessionState.CONNECTED,
            SessionState.RUNNING,
            SessionState.STOPPED,
        )

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def ping(self) -> bool:
        return True

    def connect(self, address: Optional[str] = None) -> None:
        """Open the stream; raises ConnectError if it cannot be opened."""
        with self._state_lock:
            if self._state is not SessionState.DISCONNECTED:
                raise RuntimeError(f"cannot connect while {self._state.value}")
            self._state = SessionState.CONNECTING
            try:
                self._address = self._open(address)
            except BaseException:
                self._state = SessionState.DISCONNECTED
                raise
            self._last_error = None
            self._buffer.clear()
            self._state = SessionState.CONNECTED
        self.logger.info("Connected to %s", self._address)

    def start(self) -> None:
        """Start the read loop; waits for a stop() in progress to finish first."""
        with self._state_lock:
            while self._stopping:
                self._state_changed.wait()
            if self._state is SessionState.RUNNING:
                return
            if self._state not in (SessionState.CONNECTED, SessionState.STOPPED):
                raise RuntimeError(f"cannot start while {self._state.value}")
            if self._last_error is not None:
                raise StreamClosed(f"stream lost: {self._last_error}")
            self._generation += 1
            self._start_loop()
            self._state = SessionState.RUNNING
        self.logger.info("Reading from %s", self._address)

    def stop(self) -> None:
        """Ask the loop to exit and wait until it has. Safe to call from several threads."""
        with self._state_lock:
            if self._state is not SessionState.RUNNING:
                return
            generation = self._generation
            self._stopping = True
            handle = self._request_stop()
        # joined outside the lock: the loop takes it when the stream is lost
        try:
            self._wait_stopped(handle)
        finally:
            with self._state_lock:
                if self._generation == generation:
                    if self._state is SessionState.RUNNING:
                        self._state = SessionState.STOPPED
                    self._stopping = False
                    self._state_changed.notify_all()
        self.logger.info("Stopped reading from %s", self._address)

    def disconnect(self) -> None:
        self.stop()
        with self._state_lock:
            if self._state is SessionState.DISCONNECTED:
                return
            try:
                self._close()
            finally:
                self._state = SessionState.DISCONNECTED
        self.logger.info("Disconnected from %s", self._address)

    def read_batch(self) -> List[Sample]:
        """Everything decoded since the previous call. Never blocks on the stream."""
        return self._buffer.drain()

    def read_frame(self) -> List[Sample]:
        """Read one frame directly, without the background loop."""
        with self._state_lock:
            if self._state is SessionState.RUNNING:
                raise RuntimeError("read_frame() cannot be used while the read loop is running")
            if not self.is_connected:
                raise RuntimeError("not connected")
        try:
            return self._read_once()
        except StreamClosed as exc:
            self.logger.error("Lost stream from %s: %s", self._address, exc)
            with self._state_lock:
                self._last_error = exc
                if self.is_connected:
                    self._state = SessionState.STOPPED
            raise

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()


class DeviceSession(BaseSession):
    """
    A live connection to a Mindset over a serial (RFCOMM) port.

    Parameters
    ----------
    config : SessionConfig, optional
        Address, line speed, read timeout and sync budget.
    logger : logging.Logger, optional
        Receives lifecycle and diagnostic messages.
    backend : SerialBackend, optional
        Opens the port; replaceable for testing.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        logger: Optional[logging.Logger] = None,
        backend: Optional[SerialBackend] = None,
    ):
        super().__init__(config, logger)
        self.backend = backend or SerialBackend()
        self._port = None
        self._reader: Optional[FrameReader] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def stats(self) -> dict:
        return self._reader.stats.as_dict() if self._reader else {}

    def _open(self, address: Optional[str]) -> str:
        address = address or self.config.address or Mindset.SERIAL_PORT
        self.logger.debug("CONNECT %s, %d", address, self.config.baud_rate)
        try:
            self._port = self.backend.open(
                address,
                baud_rate=self.config.baud_rate,
                timeout=self.config.read_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise ConnectError(f"Could not connect to {address}: {exc}") from exc
        self._reader = FrameReader(
            self._port,
            sync_retries=self.config.sync_retries,
            logger=self.logger,
            verbose=self.config.verbose,
        )
        return address

    def _close(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except (serial.SerialException, OSError) as exc:
            self.logger.warning("Error closing %s: %s", self._address, exc)

    def _start_loop(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"mindset-reader-{self._address}", daemon=True
        )
        self._thread.start()

    def _request_stop(self):
        # the handle stays set until joined, so every concurrent stop() joins it
        self._stop_event.set()
        return self._thread

    def _wait_stopped(self, thread) -> None:
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._state_lock:
            if self._thread is thread:
                self._thread = None

    def _read_once(self) -> List[Sample]:
        return self._reader.read_frame()

    def _run(self) -> None:
        reader = self._reader
        while not self._stop_event.is_set():
            try:
                result = reader.read()
            except StreamClosed as exc:
                self.logger.error("Lost stream from %s: %s", self._address, exc)
                self._last_error = exc
                with self._state_lock:
                    if self._state is SessionState.RUNNING:
                        self._state = SessionState.STOPPED
                break
            if result.status is ReadStatus.OK and result.samples:
                self._buffer.append(result.samples)
            # let consumer threads in between frames
            time.sleep(0)

        if self.config.verbose:
            self.logger.info("Read loop exited: %s", reader.stats.as_dict())
