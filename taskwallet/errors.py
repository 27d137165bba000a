class TaskWalletError(Exception):
    code = "error"
    status_code = 400


class NotFoundError(TaskWalletError):
    code = "not_found"
    status_code = 404


class InvalidStateError(TaskWalletError):
    code = "invalid_state"
    status_code = 409


class AlreadyProcessedError(InvalidStateError):
    code = "already_processed"


class ConflictError(TaskWalletError):
    code = "conflict"
    status_code = 409


class InsufficientBalanceError(TaskWalletError):
    code = "insufficient_balance"


class BelowMinimumError(TaskWalletError):
    code = "below_minimum"


class InvalidAmountError(TaskWalletError):
    code = "invalid_amount"


class TooSoonError(TaskWalletError):
    code = "too_soon"
    status_code = 429


class ForbiddenError(TaskWalletError):
    code = "forbidden"
    status_code = 403


class UnauthorizedError(TaskWalletError):
    code = "unauthorized"
    status_code = 401
