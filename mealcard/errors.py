"""
Errors raised by the verification core.
Policy denials are not errors; they come back as outcome values.
"""


class InvalidRequest(ValueError):
    """Malformed scan payload, unknown meal type or bad report parameters."""


class VerificationUnavailable(RuntimeError):
    """Ledger or denial list could not be reached in time."""


class LedgerIntegrityError(RuntimeError):
    """A persisted record holds a value the engine does not recognise."""
