"""
Out-of-process Mindset Service
==============================

Hosts one DeviceSession in a child process so that a fault in the serial
reader cannot take down the caller, and so that several clients can share one
open headset connection.

Startup Handoff:
----------------
1. The parent opens a one-way handoff pipe and a control pipe, then spawns
   the child.
2. The child binds a ``multiprocessing.connection.Listener`` on an ephemeral
   localhost port, starts accepting, writes the ``"host:port"`` address into
   the handoff pipe and closes it.
3. The parent reads the address, builds a SessionProxy and pings it every
   ``poll_interval`` seconds until a round-trip succeeds or ``timeout``
   elapses. On timeout the child is terminated and joined, and ConnectError
   is raised.

Request/Response:
-----------------
Every proxy call opens an authenticated connection, sends
``(name, args, kwargs)`` and receives ``("ok", value)`` or
``("error", exception)``. Only the public session operations can be called.

Supervision:
------------
restart() sends "reload" over the control pipe: the child closes its listener
and reopens it on the same address, keeping the same session (and therefore
the same open headset connection). stop() sends "interrupt": the child closes
the listener, disconnects the session and exits. SIGHUP and SIGINT/SIGTERM
delivered to the child map onto the same two actions.
"""

import logging
import multiprocessing
import os
import signal
import threading
import time
from multiprocessing.connection import Client, Listener
from typing import Optional, Tuple

from .errors import ConnectError
from .session import DeviceSession, SessionConfig

logger = logging.getLogger(__name__)

# Seconds to wait for a freshly spawned service to answer
SERVICE_TIMEOUT = 60.0
POLL_INTERVAL = 0.1
# Seconds a stopping child gets before it is terminated
SHUTDOWN_GRACE = 5.0

_METHODS = frozenset(
    ("connect", "disconnect", "start", "stop", "read_batch", "read_frame", "ping")
)
_ATTRIBUTES = frozenset(
    ("state", "is_connected", "is_running", "stats", "address", "last_error")
)


def format_address(address: Tuple[str, int]) -> str:
    host, port = address
    return f"{host}:{port}"


def parse_address(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"not a host:port address: {address!r}")
    return host, int(port)


class SessionProxy:
    """
    Client-side handle to a hosted session.

    Mirrors the DeviceSession interface; every call is one synchronous
    round-trip, and remote exceptions are re-raised locally.
    """

    def __init__(self, address: str, authkey: Optional[bytes] = None):
        self.address = address
        self._endpoint = parse_address(address)
        self._authkey = authkey

    def _call(self, name: str, *args, **kwargs):
        with Client(self._endpoint, authkey=self._authkey) as conn:
            conn.send((name, args, kwargs))
            status, value = conn.recv()
        if status == "error":
            raise value
        return value

    def ping(self) -> bool:
        return self._call("ping")

    def connect(self, address: Optional[str] = None) -> None:
        self._call("connect", address)

    def disconnect(self) -> None:
        self._call("disconnect")

    def start(self) -> None:
        self._call("start")

    def stop(self) -> None:
        self._call("stop")

    def read_batch(self):
        return self._call("read_batch")

    def read_frame(self):
        return self._call("read_frame")

    @property
    def state(self):
        return self._call("state")

    @property
    def is_connected(self) -> bool:
        return self._call("is_connected")

    @property
    def is_running(self) -> bool:
        return self._call("is_running")

    @property
    def stats(self) -> dict:
        return self._call("stats")

    @property
    def device_address(self) -> Optional[str]:
        return self._call("address")

    @property
    def last_error(self):
        return self._call("last_error")

    def __repr__(self):
        return f"SessionProxy({self.address!r})"


class _Endpoint:
    """Child-side listener that dispatches requests to the hosted session."""

    def __init__(self, session: DeviceSession, authkey: Optional[bytes]):
        self.session = session
        self.authkey = authkey
        self.address: Optional[Tuple[str, int]] = None
        self._listener: Optional[Listener] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def start(self, address: Tuple[str, int] = ("127.0.0.1", 0)) -> None:
        self._stopping = False
        self._listener = Listener(address, family="AF_INET", authkey=self.authkey)
        self.address = self._listener.address
        self._thread = threading.Thread(
            target=self._accept_loop,
            args=(self._listener,),
            name="mindset-service",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = SHUTDOWN_GRACE) -> None:
        if self._listener is None:
            return
        self._stopping = True
        # accept() only returns on a connection, so make one
        try:
            Client(self.address, authkey=self.authkey).close()
        except (OSError, EOFError) as exc:
            logger.debug("Wake-up connection failed: %s", exc)
        self._listener.close()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Accept thread on %s did not exit", format_address(self.address))
        self._listener = None
        self._thread = None

    def _retired(self, listener) -> bool:
        return self._stopping or listener is not self._listener

    def _accept_loop(self, listener) -> None:
        while True:
            try:
                conn = listener.accept()
            except multiprocessing.AuthenticationError as exc:
                logger.warning("Rejected client: %s", exc)
                continue
            except OSError:
                if self._retired(listener):
                    return
                raise
            if self._retired(listener):
                conn.close()
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _dispatch(self, name: str, args, kwargs):
        if name in _METHODS:
            return getattr(self.session, name)(*args, **kwargs)
        if name in _ATTRIBUTES:
            return getattr(self.session, name)
        raise AttributeError(f"{name!r} is not available on a hosted session")

    def _handle(self, conn) -> None:
        with conn:
            try:
                name, args, kwargs = conn.recv()
            except (EOFError, OSError):
                return
            try:
                reply = ("ok", self._dispatch(name, args, kwargs))
            except Exception as exc:
                reply = ("error", exc)
            try:
                conn.send(reply)
            except (EOFError, OSError):
                logger.debug("Client went away before the reply to %s", name)
            except Exception as exc:
                # the value or exception did not pickle
                conn.send(("error", RuntimeError(f"{name} failed: {exc!r}")))


def _serve(
    handoff,
    control,
    authkey: Optional[bytes],
    config: Optional[SessionConfig],
    log_level: Optional[int],
) -> None:
    """Entry point of the hosted process."""
    if log_level is not None:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(processName)s - %(levelname)s - %(message)s",
        )

    # installed before the address is handed out, so no signal finds the defaults
    pending = []

    def _on_signal(signum, frame):
        pending.append("reload" if signum == getattr(signal, "SIGHUP", None) else "interrupt")

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    session = DeviceSession(config, logging.getLogger("OpenMindset.session"))
    endpoint = _Endpoint(session, authkey)
    endpoint.start()

    handoff.send(format_address(endpoint.address))
    handoff.close()

    logger.info("Mindset service on %s PID %d", format_address(endpoint.address), os.getpid())
    try:
        while True:
            command, reply = None, False
            if pending:
                command = pending.pop(0)
            else:
                try:
                    if control.poll(POLL_INTERVAL):
                        command, reply = control.recv(), True
                except (EOFError, OSError):
                    # parent is gone
                    command = "interrupt"
            if command == "reload":
                logger.info("Stopping Mindset service")
                endpoint.stop()
                logger.info("Starting Mindset service")
                endpoint.start(endpoint.address)
                if reply:
                    control.send("reloaded")
            elif command == "interrupt":
                logger.info("Stopping Mindset service")
                break
    finally:
        endpoint.stop()
        session.disconnect()
        control.close()


class ServiceHost:
    """
    Run a DeviceSession in a separate process and hand back a proxy to it.

    Parameters
    ----------
    config : SessionConfig, optional
        Configuration for the hosted session.
    timeout : float
        Seconds to wait for the service to become ready.
    poll_interval : float
        Seconds between readiness pings.
    log_level : int, optional
        If set, the child configures logging at this level.
    context : str or multiprocessing context, optional
        Start method ("fork", "spawn", "forkserver") or context to use.
    target : callable, optional
        Child entry point, called as ``target(handoff, control, authkey,
        config, log_level)``. Defaults to the standard service loop.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        timeout: float = SERVICE_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        log_level: Optional[int] = None,
        context=None,
        target=None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.config = config
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.log_level = log_level
        if context is None or isinstance(context, str):
            context = multiprocessing.get_context(context)
        self._ctx = context
        self._target = target or _serve
        self._process = None
        self._control = None
        self._proxy: Optional[SessionProxy] = None

    @property
    def address(self) -> Optional[str]:
        return self._proxy.address if self._proxy else None

    @property
    def proxy(self) -> Optional[SessionProxy]:
        return self._proxy

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> SessionProxy:
        """Spawn the service and return a proxy once it answers."""
        if self.is_alive:
            raise RuntimeError("service already running")
        logger.info("Starting Mindset service ...")

        authkey = os.urandom(32)
        handoff_r, handoff_w = self._ctx.Pipe(duplex=False)
        control, control_child = self._ctx.Pipe()
        self._process = self._ctx.Process(
            target=self._target,
            args=(handoff_w, control_child, authkey, self.config, self.log_level),
            name="mindset-service",
            daemon=True,
        )
        self._process.start()
        handoff_w.close()
        control_child.close()
        self._control = control

        deadline = time.monotonic() + self.timeout
        try:
            if not handoff_r.poll(self.timeout):
                raise ConnectError("Mindset service did not report an address")
            try:
                address = handoff_r.recv()
            except EOFError as exc:
                raise ConnectError("Mindset service exited during startup") from exc
            proxy = SessionProxy(address, authkey)
            self._wait_ready(proxy, deadline)
        except ConnectError:
            self._kill()
            raise
        finally:
            handoff_r.close()

        self._proxy = proxy
        logger.info("Mindset service on %s PID %d", address, self._process.pid)
        return proxy

    def restart(self) -> None:
        """Reopen the service listener in place; the proxy stays valid."""
        if not self.is_alive:
            raise RuntimeError("service is not running")
        self._control.send("reload")
        if not self._control.poll(self.timeout) or self._control.recv() != "reloaded":
            raise ConnectError("Mindset service did not acknowledge reload")
        self._wait_ready(self._proxy, time.monotonic() + self.timeout)

    def stop(self) -> None:
        """Shut the service down and reap the child process."""
        if self._process is None:
            return
        logger.info("Stopping %s ...", self.address)
        if self._process.is_alive():
            try:
                self._control.send("interrupt")
            except (OSError, ValueError) as exc:
                logger.debug("Could not send interrupt: %s", exc)
            self._process.join(SHUTDOWN_GRACE)
        self._kill()
        logger.info("Mindset service stopped")

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.is_alive():
            process.terminate()
            process.join(SHUTDOWN_GRACE)
            if process.is_alive():
                process.kill()
                process.join()
        elif process is not None:
            process.join()
        if self._control is not None:
            self._control.close()
            self._control = None

    def _wait_ready(self, proxy: SessionProxy, deadline: float) -> None:
        """Ping until the service answers; a hung handshake is abandoned at the deadline."""
        ready = threading.Event()
        cancelled = threading.Event()

        def _poll():
            while not cancelled.is_set():
                try:
                    proxy.ping()
                    ready.set()
                    return
                except (OSError, EOFError, multiprocessing.AuthenticationError):
                    time.sleep(self.poll_interval)

        poller = threading.Thread(target=_poll, name="mindset-service-ready", daemon=True)
        poller.start()
        poller.join(max(0.0, deadline - time.monotonic()))
        cancelled.set()
        if not ready.is_set():
            raise ConnectError(f"Cannot connect to {proxy.address}")

    def __enter__(self) -> SessionProxy:
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
