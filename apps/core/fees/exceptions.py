"""Typed failures raised by the fee ledger.

All of them are ``ValidationError`` subclasses, so callers that already catch
Django validation errors keep working; the ``code`` attribute tells the kinds
apart.
"""
from django.core.exceptions import ValidationError


class FeeLedgerError(ValidationError):
    code = 'fee_ledger_error'

    def __init__(self, message, params=None):
        if isinstance(message, str):
            super().__init__(message, code=self.code, params=params)
        else:
            super().__init__(message)
        self.code = type(self).code


class NotFoundError(FeeLedgerError):
    code = 'not_found'


class LedgerValidationError(FeeLedgerError):
    code = 'validation'


class ExceedsDueError(FeeLedgerError):
    code = 'exceeds_due'

    def __init__(self, amount, due_amount):
        self.amount = amount
        self.due_amount = due_amount
        super().__init__(f"Amount ({amount}) exceeds the due amount ({due_amount}).")


class DuplicateBillingError(FeeLedgerError):
    code = 'duplicate_billing'


class ConflictError(FeeLedgerError):
    code = 'conflict'


class AlreadyCancelledError(ConflictError):
    code = 'already_cancelled'


class ConcurrentUpdateError(ConflictError):
    code = 'concurrent_update'


class InvalidStateError(FeeLedgerError):
    code = 'invalid_state'


class NumberingCollisionError(FeeLedgerError):
    code = 'numbering_collision'


class PartiallyAppliedError(FeeLedgerError):
    """The receipt row is committed but the collection was not updated to match.

    ``stage`` is ``credit`` for a receipt that was never applied and
    ``reversal`` for a cancelled receipt whose amount is still counted.
    """

    code = 'partially_applied'

    STAGE_CREDIT = 'credit'
    STAGE_REVERSAL = 'reversal'

    def __init__(self, receipt, stage, message=''):
        self.receipt = receipt
        self.stage = stage
        super().__init__(
            message
            or f"Receipt {receipt.receipt_number} was saved but its {stage} was not applied. Run reconciliation."
        )
