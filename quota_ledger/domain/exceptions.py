"""Domain-specific exceptions"""

from enum import Enum


class ErrorKind(str, Enum):
    """How a failed ledger operation should be treated by its caller"""

    PRECONDITION = "precondition"  # not found / already processed, never auto-retried
    INSUFFICIENT_RESOURCE = "insufficient_resource"  # retry after state changes
    INFRA = "infra"  # deadlock, lock timeout, lost connection: retry verbatim


class DomainException(Exception):
    """Base exception for domain layer"""

    kind = ErrorKind.PRECONDITION


class AlreadyProcessedError(DomainException):
    """Entity not found in an actionable status (at-most-once guard)"""

    pass


class EntityNotFoundError(DomainException):
    """Referenced row does not exist"""

    pass


class LoanNotPayableError(DomainException):
    """Loan is not in a status that accepts payments"""

    pass


class InvalidMetadataError(DomainException):
    """Transaction or loan metadata failed validation"""

    pass


class UnsupportedTransactionError(DomainException):
    """Transaction type has no approval handler"""

    pass


class InsufficientFundsError(DomainException):
    """User balance would go negative"""

    kind = ErrorKind.INSUFFICIENT_RESOURCE


class InsufficientLiquidityError(DomainException):
    """Operating cash net of reserves cannot cover the payout"""

    kind = ErrorKind.INSUFFICIENT_RESOURCE


class CreditLimitExceededError(DomainException):
    """Borrower's available credit is below the requested amount"""

    kind = ErrorKind.INSUFFICIENT_RESOURCE


class InsufficientProfitPoolError(DomainException):
    """Profit pool cannot fund the bonus yet"""

    kind = ErrorKind.INSUFFICIENT_RESOURCE


class NestedScopeError(RuntimeError):
    """A transaction scope was opened inside another one"""

    pass
