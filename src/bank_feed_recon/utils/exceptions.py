"""Custom exceptions for the bank feed reconciliation engine."""

from typing import Optional


class BankReconError(Exception):
    """Base exception for all engine errors."""

    pass


class ConfigurationError(BankReconError):
    """Error in configuration."""

    pass


# Input errors: reported to the caller, never retried automatically


class InputError(BankReconError):
    """Invalid input supplied by the caller."""

    pass


class ParseError(InputError):
    """Statement file could not be decoded."""

    pass


class FormatDetectionError(InputError):
    """Statement format is unsupported or ambiguous."""

    pass


class InvalidAccountError(InputError):
    """Bank account does not exist in the acting organization."""

    pass


class TransactionNotFoundError(InputError):
    """Bank transaction does not exist in the acting organization."""

    pass


class TransactionReconciledError(InputError):
    """Operation is not permitted on a reconciled transaction."""

    pass


class NoMatchesProvidedError(InputError):
    """Reconciliation was requested with an empty selection."""

    pass


class InvalidMatchSelectionError(InputError):
    """A selected match carries an invalid allocation."""

    pass


class MatchNotFoundError(InputError):
    """A selected counterpart does not exist or is no longer active."""

    pass


class ProviderNotConfiguredError(InputError):
    """Aggregator is unknown or has no stored credentials."""

    pass


class InvalidFlowTransitionError(InputError):
    """Connection flow step is not legal from the current state."""

    pass


class FlowNotFoundError(InputError):
    """No pending connection exists for the request token."""

    pass


class FlowExpiredError(InputError):
    """Pending connection request token has expired."""

    pass


class ConnectionNotFoundError(InputError):
    """Bank connection does not exist in the organization."""

    pass


class UnsupportedCountryError(InputError):
    """Provider does not serve the requested country."""

    pass


# Conflict errors: expected and recoverable


class ConflictError(BankReconError):
    """Concurrent modification conflict."""

    pass


class AlreadyReconciledError(ConflictError):
    """Transaction has already been reconciled."""

    pass


class MatchAlreadyClaimedError(ConflictError):
    """Counterpart open balance was claimed by another reconciliation."""

    pass


class ImportLockTimeoutError(ConflictError):
    """Another import for the same account did not finish in time."""

    pass


# External errors


class ProviderError(BankReconError):
    """Error returned by an open banking aggregator."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    """Aggregator did not answer within the request timeout."""

    pass


class AuthorizationExpiredError(ProviderError):
    """Aggregator reports the access grant as revoked or expired."""

    pass


class ConnectionInitiationError(ProviderError):
    """Aggregator refused to start an authorization request."""

    pass


class ConnectionStateError(BankReconError):
    """Connection is not in a state that allows the operation."""

    pass


class ConnectionNotActiveError(ConnectionStateError):
    """Connection is pending or revoked."""

    pass


class ConnectionExpiredError(ConnectionStateError):
    """Connection grant has expired and must be re-authorized."""

    pass


class PersistenceError(BankReconError):
    """Database write failed; the batch was rolled back."""

    pass


class OperationCancelledError(BankReconError):
    """Import or sync was cancelled by the caller."""

    pass
