"""Error taxonomy for the certificate renewal daemon."""


class LeResponderError(Exception):
    """Base class for all daemon errors."""


class ConfigurationError(LeResponderError):
    """Invalid or incomplete configuration. Fatal at startup."""


class StorageError(LeResponderError):
    """The certificate store failed to complete an operation."""


class NotFoundError(StorageError):
    """The requested path does not exist in the store."""

    def __init__(self, path: str):
        super().__init__(f"not found: {path}")
        self.path = path


class CommsError(StorageError):
    """The certificate store could not be reached."""


class IssuanceError(LeResponderError):
    """A certificate authority call failed or returned something unusable."""


class ChallengeStateError(LeResponderError):
    """The record is in a state that needs operator action."""


class ParseError(LeResponderError):
    """Stored PEM material is malformed or of the wrong type."""


class ObserverError(LeResponderError):
    """At least one observer failed while being notified."""


def is_comms_error(error: BaseException) -> bool:
    """Check whether an error means the store was unreachable."""
    return isinstance(error, CommsError)
