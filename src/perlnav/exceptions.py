"""Exception types raised by the perlnav server core."""

from __future__ import annotations


class PerlNavError(RuntimeError):
    pass


class ConfigurationError(PerlNavError):
    """Settings for a document could not be resolved.

    Raised when the client rejects or fails a scoped ``workspace/configuration``
    request, or returns a section that does not validate. Callers get the
    failure as-is; no default settings are substituted.
    """

    def __init__(self, message: str, *, uri: str | None = None):
        super().__init__(message)
        self.uri = uri


class AnalysisExecutionError(PerlNavError):
    """An external analysis process could not produce a usable result."""


class NeverThrown(PerlNavError):
    """Raised by ``never()`` when a supposedly unreachable path is reached."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})
