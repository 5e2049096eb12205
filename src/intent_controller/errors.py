"""Error taxonomy for the reconciliation pipeline.

Every stage failure is a ReconcileError carrying the condition reason it
should be reported under. The subclass decides the retry cadence:

- PreconditionError: permanent until something outside the operator changes
  (namespace label, missing service, unknown provider). Retried slowly.
- ProviderError: the identity provider rejected a request for a reason other
  than a timeout or conflict. Retried like a precondition, reported under
  its own reason.
- TransientError: conflicts, timeouts, a gateway that is briefly missing.
  Retried quickly.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures reported through a condition."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message

    @property
    def transient(self) -> bool:
        """Whether the failure is expected to clear up on its own."""
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason!r}, message={self.message!r})"


class PreconditionError(ReconcileError):
    """Raised when the intent cannot converge until external state changes."""

    pass


class ProviderError(PreconditionError):
    """Raised when the identity provider rejects a request."""

    pass


class TransientError(ReconcileError):
    """Raised for failures that are expected to resolve on retry."""

    @property
    def transient(self) -> bool:
        return True
