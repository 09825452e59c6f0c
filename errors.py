"""Exception taxonomy for the library import pipeline."""

from __future__ import annotations


class LibraryImportError(RuntimeError):
    """Base class for every error raised by the import pipeline."""


class AuthError(LibraryImportError):
    """The archive session could not be obtained."""

    retryable = False


class LoginFormNotFoundError(AuthError):
    pass


class SubmissionFailedError(AuthError):
    pass


class InvalidCredentialsError(AuthError):
    """The archive showed an explicit error banner or kept the login form."""


class SessionNotFoundError(AuthError):
    """The page moved on but no success signal was found."""


class AmbiguousTimeoutError(AuthError):
    """No page transition and no explicit success signal within the timeout."""

    retryable = True


class BrowserUnavailableError(AuthError):
    """Interactive browser automation could not be started in this runtime."""


class ParseError(LibraryImportError):
    """An export payload is malformed or has an unusable shape."""


class StoreError(LibraryImportError):
    pass


class StoreUnavailableError(StoreError):
    """The Store cannot be reached; the whole load must stop."""


class BatchRejectedError(StoreError):
    """The Store refused one batch (constraint violation)."""


class PartialImportError(LibraryImportError):
    def __init__(self, failed_batches: int, total_batches: int) -> None:
        self.failed_batches = failed_batches
        self.total_batches = total_batches
        super().__init__(f"{failed_batches} of {total_batches} batches failed")
