"""OpenMindset: Minimal utilities for NeuroSky Mindset EEG headsets."""

from .decode import (
    Attention,
    Blink,
    EegBands,
    Meditation,
    RawWave,
    Sample,
    SignalQuality,
    decode_frame,
    decode_rawdata,
)
from .errors import ConnectError, FrameInvalid, FrameTruncated, StreamClosed, SyncTimeout
from .find import find_devices
from .reader import FrameReader
from .record import CaptureSession, record
from .replay import ReplaySession
from .service import ServiceHost, SessionProxy
from .session import DeviceSession, SessionConfig, SessionState

__version__ = "0.1.0"
