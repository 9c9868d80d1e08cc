"""
Ledger error taxonomy.

Ledger errors are deterministic outcomes of the state machine and are never
worth retrying. Transport errors (timeouts, connectivity) are the only
retryable failures.
"""


class LedgerError(Exception):
    code = "LedgerError"
    status_code = 400

    def __init__(self, order_id: str = "", detail: str = ""):
        self.order_id = order_id
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(f"{self.code}: {self.detail}" + (f" ({order_id})" if order_id else ""))


class DuplicateOrder(LedgerError):
    """Order already exists"""
    code = "DuplicateOrder"
    status_code = 409


class NotFound(LedgerError):
    """Payment not found"""
    code = "NotFound"
    status_code = 404


class AlreadyCompleted(LedgerError):
    """Already completed"""
    code = "AlreadyCompleted"
    status_code = 409


class NotExpired(LedgerError):
    """Not expired yet"""
    code = "NotExpired"
    status_code = 409


class Unauthorized(LedgerError):
    """Caller is not allowed to confirm payments"""
    code = "Unauthorized"
    status_code = 403


class InvalidAmount(LedgerError):
    """Amount must be a positive integer"""
    code = "InvalidAmount"
    status_code = 422


class InsufficientFunds(LedgerError):
    """Payer balance does not cover the amount"""
    code = "InsufficientFunds"
    status_code = 422


LEDGER_ERRORS = {
    cls.code: cls
    for cls in (
        DuplicateOrder,
        NotFound,
        AlreadyCompleted,
        NotExpired,
        Unauthorized,
        InvalidAmount,
        InsufficientFunds,
    )
}


class LedgerTransportError(Exception):
    """The ledger could not be reached or did not answer in time."""
