"""
Errors raised by a renewal attempt.

Every error carries what a human operator needs to act on it: a suggestion
and optional notes/warnings added by the diagnostics.  Causes are kept with
``raise ... from`` so ``report()`` can print the whole chain.
"""
from __future__ import annotations

from typing import Iterator, Optional


class RenewalError(Exception):
    """Base class for failures that end a renewal attempt."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        notes: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.suggestion = suggestion
        self.notes: list[str] = list(notes or [])
        self.warnings: list[str] = []

    def with_note(self, note: str) -> "RenewalError":
        self.notes.append(note)
        return self

    def with_warning(self, warning: str) -> "RenewalError":
        self.warnings.append(warning)
        return self

    def with_suggestion(self, suggestion: str) -> "RenewalError":
        self.suggestion = suggestion
        return self

    def report(self) -> str:
        """Render the error, its cause chain, notes and suggestion."""
        lines = [f"Error: {self}"]
        causes = list(error_chain(self))[1:]
        if causes:
            lines.append("Caused by:")
            lines.extend(f"   {i}: {cause}" for i, cause in enumerate(causes))
        lines.extend(f"Note: {note}" for note in self.notes)
        lines.extend(f"Warning: {warning}" for warning in self.warnings)
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)


def error_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and every exception it was raised from, outermost first."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class CertParseError(RenewalError):
    """An existing certificate could not be read."""


class NoHttp01ChallengeError(RenewalError):
    """The CA did not offer an http-01 challenge for an authorization."""


class AuthorizationError(RenewalError):
    """An authorization is in a state that can not be completed."""


class OrderInvalidError(RenewalError):
    """The CA marked the order invalid."""


class OrderTimeoutError(RenewalError):
    """The order did not become ready before the polling deadline."""


class ChallengeServerError(RenewalError):
    """The challenge server stopped while the CA was validating."""


class BindError(ChallengeServerError):
    """The challenge server could not attach to its port."""

    def __init__(self, port: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Could not attach challenge server to port {port}")
        self.port = port


class UnreachableError(RenewalError):
    """The challenge server could not be reached through a domain."""
