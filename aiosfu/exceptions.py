"""Exceptions raised by aiosfu."""


class SfuError(Exception):
    """Base class for all aiosfu errors.

    The message of an SfuError is human readable and is sent verbatim to the
    client in an error event when raised by a server-side handler.
    """


class NotFoundError(SfuError):
    """A transport, consumer or stream id is unknown."""


class NoTransportError(NotFoundError):
    """The client has no client-facing transport to consume on."""


class WrongTypeError(SfuError):
    """A resource id resolves, but to a resource of an incompatible kind."""


class IncompatibleError(SfuError):
    """The receive capabilities of a client cannot consume a source."""


class EngineFailureError(SfuError):
    """The media engine failed to create or negotiate a resource."""


class ProtocolError(SfuError):
    """A signaling message could not be parsed."""


class UnknownActionError(ProtocolError):
    """A signaling message named an action that does not exist."""

    def __init__(self, action: object) -> None:
        """Create the error for the unrecognized action."""
        super().__init__(f"Unknown action: {action}")
        self.action = action


class ChannelFailureError(SfuError):
    """The signaling channel gave up reconnecting."""


class UnsupportedDeviceError(SfuError):
    """The local media device cannot handle the engine capabilities."""


class PlaybackNotAllowedError(SfuError):
    """Playback requires a user interaction before it may start."""
