"""Custom error types for realharness."""


class RealHarnessError(Exception):
    """Base class for all realharness errors."""


class LaunchError(RealHarnessError):
    """Raised when the server process cannot be started."""


class AbnormalTerminationError(RealHarnessError, AssertionError):
    """Raised when the server process exits with a non-zero code."""

    exit_code: int
    description: str

    def __init__(self, exit_code: int, description: str) -> None:
        """Initialize an abnormal termination error.

        :param exit_code: Exit code reported by the server process.
        :param description: Session label of the failed launch.
        """
        self.exit_code = exit_code
        self.description = description
        super().__init__(f"nonzero exit code {exit_code} from {description}")

    def __reduce__(self) -> object:
        return (type(self), (self.exit_code, self.description))


class SerializationError(RealHarnessError, OSError):
    """Raised when a step or failure value cannot be transported."""


class SessionStateError(RealHarnessError):
    """Raised when a session is used outside its allocated lifetime."""
