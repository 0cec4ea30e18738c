"""Exception hierarchy for cotog-rtc.

Session-level errors subclass ConnectError and surface to the caller of
SessionConnectionManager.connect() (or through its ``fatal_error`` event when
they happen in the background). Voice errors never end the session: media
acquisition failures only disable voice, and negotiation failures are isolated
to a single peer link.
"""


class CotogRTCError(Exception):
    """Base class for all cotog-rtc errors."""

    pass


# =============================================================================
# Session errors
# =============================================================================


class ConnectError(CotogRTCError):
    """Raised when a room session cannot be established or is lost."""

    #: Whether the reconnection policy may retry after this error.
    retryable = False


class AuthenticationError(ConnectError):
    """Raised when the relay rejects the token or the room password."""

    pass


class RoomNotFoundError(ConnectError):
    """Raised when the room does not exist or is no longer active."""

    pass


class InvalidRoomIdError(ConnectError):
    """Raised when a room id is malformed."""

    pass


class RoomFullError(ConnectError):
    """Raised when the room has reached its member limit."""

    pass


class DuplicateMembershipError(ConnectError):
    """Raised when the relay still lists us as a member after one recovery."""

    pass


class TransientConnectError(ConnectError):
    """Transport-level failure that the reconnection policy retries."""

    retryable = True


class TransportTimeoutError(TransientConnectError):
    """Raised when opening the channel or awaiting the join ack times out."""

    pass


class TransportDropError(TransientConnectError):
    """Raised when the transport fails or closes unexpectedly."""

    pass


class ConnectionBusyError(ConnectError):
    """Raised when a join is rejected by the dedup gate.

    Attributes:
        reason: One of "teardown", "debounce" or "in_flight".
    """

    def __init__(self, reason: str):
        super().__init__(f"Join rejected: {reason}")
        self.reason = reason


class ConnectionCancelledError(ConnectError):
    """Raised when an in-flight attempt is superseded or disconnected."""

    pass


class SessionTerminatedError(ConnectError):
    """Raised when the relay ends the session (kick, room closed, shutdown).

    Attributes:
        reason: The inbound event that ended the session.
    """

    def __init__(self, reason: str):
        super().__init__(f"Session terminated by relay: {reason}")
        self.reason = reason


# =============================================================================
# Voice errors
# =============================================================================


class MediaAcquisitionError(CotogRTCError):
    """Raised when the local microphone cannot be opened."""

    pass


class PeerNegotiationError(CotogRTCError):
    """Raised when SDP/ICE negotiation with one remote participant fails."""

    def __init__(self, participant_id: str, message: str):
        super().__init__(f"Negotiation with {participant_id} failed: {message}")
        self.participant_id = participant_id
