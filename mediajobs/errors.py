"""Exception hierarchy shared by the broker and the workers."""


class MediaJobsError(Exception):
    """Base class for all media job errors."""


class ConfigurationError(MediaJobsError):
    """A process is missing settings it cannot run without."""


# Broker-side caller errors


class UnknownJobTypeError(MediaJobsError, ValueError):
    """Raised when a job type is not one of the supported types."""


class JobNotFoundError(MediaJobsError, KeyError):
    """Raised when a job id is not known to the broker."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Job not found"


class InvalidJobTransitionError(MediaJobsError):
    """Raised when a status or progress update breaks the job lifecycle."""


# Worker-side errors


class MediaNotFoundError(MediaJobsError):
    """The media record referenced by a job does not exist or has no asset."""


class TokenSigningError(MediaJobsError, ValueError):
    """A CDN path could not be signed."""


class MediaToolError(MediaJobsError):
    """An external media utility exited with an error or unusable output."""


class MediaToolTimeoutError(MediaToolError):
    """An external media utility exceeded its time ceiling and was killed."""


class StorageError(MediaJobsError):
    """The content store rejected a request."""


class TransientStorageError(StorageError):
    """The content store failed in a way that may succeed on retry."""


class BrokerUnavailableError(MediaJobsError):
    """The broker could not be reached or answered with a server error."""


class JobRejectedError(MediaJobsError):
    """The broker refused a request outright (4xx); retrying cannot help."""
