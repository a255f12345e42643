"""
Error types raised by ProxyFlare components and reported in saga results.
"""

from typing import Optional


class ProxyFlareError(Exception):
    """Base class for all ProxyFlare errors."""


class TransientIOError(ProxyFlareError):
    """
    A network or file access failure.

    Provider-side error payloads are kept on the exception so callers can
    report them.
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        provider_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.provider_message = provider_message


class ValidationError(ProxyFlareError):
    """The external validator rejected the configuration."""


class ConflictError(ProxyFlareError):
    """A domain that is being created already exists."""


class ReferentialIntegrityError(ProxyFlareError):
    """A snippet cannot be removed while entries still import it."""

    def __init__(self, snippet: str, usage: int):
        super().__init__(
            f"cannot delete snippet '{snippet}': currently used by {usage} entries"
        )
        self.snippet = snippet
        self.usage = usage


class StaleHandleError(ProxyFlareError):
    """A parsed entry or snippet was used after the Caddyfile was rewritten."""


class StateInconsistencyError(ProxyFlareError):
    """
    A step failed after the commit boundary.

    The proxy side is already live; nothing was rolled back and the two
    systems now disagree until the user reconciles and syncs again.
    """

    def __init__(self, step: str, cause: Exception):
        super().__init__(
            f"{step} failed after the proxy was reloaded; DNS and proxy are now "
            f"inconsistent: {cause}"
        )
        self.step = step
        self.__cause__ = cause


class CriticalRollbackFailure(ProxyFlareError):
    """
    Restoring the Caddyfile backup failed after a failed mutation.

    The file on disk may be half-written and needs manual inspection.
    """

    def __init__(self, step: str, cause: Exception, restore_error: Exception):
        super().__init__(
            f"{step} failed AND backup restore failed: {restore_error} "
            f"(original error: {cause})"
        )
        self.step = step
        self.original = cause
        self.restore_error = restore_error
        self.__cause__ = restore_error
