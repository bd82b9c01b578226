"""Typed failures raised by the betting protocols.

Each class carries the HTTP status the API layer surfaces it with, so
``backend.main`` can translate any of them with a single handler.
"""


class PoolError(Exception):
    """Base exception for betting-engine failures."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# ---------------------------------------------------------------------------
# 400: malformed input
# ---------------------------------------------------------------------------

class ValidationError(PoolError):
    """Input failed validation; safe to show to the caller verbatim."""

    status_code = 400


class InvalidAmount(ValidationError):
    """Stake or top-up amount is non-positive or below the minimum."""

    pass


class InvalidOption(ValidationError):
    """Bet option does not belong to the market."""

    pass


# ---------------------------------------------------------------------------
# 403 / 404
# ---------------------------------------------------------------------------

class AuthorizationError(PoolError):
    """Caller is not allowed to run this operation."""

    status_code = 403


class NotFoundError(PoolError):
    """Referenced match, market, option, bet or profile does not exist."""

    status_code = 404


# ---------------------------------------------------------------------------
# 409: state conflicts
# ---------------------------------------------------------------------------

class StateConflictError(PoolError):
    """Operation is not permitted in the entity's current lifecycle state."""

    status_code = 409


class MarketNotOpen(StateConflictError):
    """Bet placed on a market that is closed or settled."""

    pass


class InvalidMarketState(StateConflictError):
    """Market transition or settlement from the wrong status."""

    pass


class NotVoidable(StateConflictError):
    """Only pending bets can be voided."""

    pass


class InsufficientBalance(StateConflictError):
    """Wallet balance is lower than the requested debit."""

    pass


# ---------------------------------------------------------------------------
# 500: store failures
# ---------------------------------------------------------------------------

class TransientStoreError(PoolError):
    """Connection or transaction failure; the whole operation may be retried."""

    status_code = 500
