"""Exceptions raised by OpenMindset."""


class MindsetError(Exception):
    """Base class for all OpenMindset errors."""


class ConnectError(MindsetError):
    """The device could not be opened, or a hosted service never became ready."""


class StreamClosed(MindsetError):
    """The underlying byte source was closed or failed."""


class FrameInvalid(MindsetError):
    """A frame carried an illegal length marker or a bad checksum."""


class SyncTimeout(MindsetError):
    """No sync marker was found within the retry budget."""


class FrameTruncated(MindsetError):
    """A data row declared more bytes than the payload holds.

    The rows decoded before the truncation point are kept in ``samples``.
    """

    def __init__(self, message: str, samples=None):
        super().__init__(message)
        self.samples = list(samples or [])
