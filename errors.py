"""Error taxonomy shared by the installment engine and its callers.

``ValueError`` subclasses are user-recoverable and are reported verbatim.
``RuntimeError`` subclasses are either infrastructure failures the caller may
retry (``TransientStoreError``) or programming errors (``SettledTransactionError``).
"""

from dataclasses import dataclass


class ValidationError(ValueError):
    """Malformed rule or request, rejected before any write."""


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    """Duplicate occurrence or an edit aimed at settled history."""


class TransientStoreError(RuntimeError):
    """Connectivity or timeout failure of the store. Safe to retry."""


class SettledTransactionError(RuntimeError):
    """A code path tried to rewrite a paid or cancelled occurrence."""


@dataclass(frozen=True)
class RuleFailure:
    rule_id: int
    error: str
    message: str
