"""Exception types raised by the relay components."""


class RelayError(RuntimeError):
    """Base class for relay failures; ``code`` is a short machine readable tag."""

    code = "relay_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)


class TransportError(RelayError):
    """Network, HTTP or payload failure while talking to a remote endpoint."""

    code = "transport_error"


class ConnectorUnavailable(RelayError):
    """The messaging connector has no ready session."""

    code = "connector_unavailable"


class PersistenceError(RelayError):
    """Local state could not be read or written."""

    code = "persistence_error"


class FatalStartupError(RelayError):
    """A mandatory component failed to start; the process must shut down."""

    code = "fatal_startup"
