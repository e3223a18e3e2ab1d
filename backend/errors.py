"""Domain errors shared by the ledger, the engines and the HTTP layer.

Codes:
  1xxx: request validation
  2xxx: balance
  3xxx: market state
  5xxx: oracle
  9xxx: persistence / internal
"""


class AppError(Exception):
    def __init__(self, code: int, message: str, http_status: int = 500) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class ValidationError(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(1001, message, 400)


class InvalidInput(ValidationError):
    pass


class InsufficientBalance(AppError):
    def __init__(self, required, available) -> None:
        super().__init__(
            2001,
            f"Insufficient balance: required {required}, available {available}",
            400,
        )


class UserNotFound(AppError):
    def __init__(self, user_ref) -> None:
        super().__init__(2002, f"User not found: {user_ref}", 404)


class MarketUnavailable(AppError):
    def __init__(self, market_id, reason: str = "not available") -> None:
        self.market_id = market_id
        self.reason = reason
        super().__init__(3001, f"Market {market_id} {reason}", 400)


class OracleUnavailable(AppError):
    def __init__(self, asset_id: str, reason: str) -> None:
        self.asset_id = asset_id
        self.reason = reason
        super().__init__(5001, f"Price oracle unavailable for {asset_id}: {reason}", 503)


class PersistenceConflict(AppError):
    def __init__(self, message: str = "Concurrent update conflict, retry later") -> None:
        super().__init__(9001, message, 409)


class InvariantViolation(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(9002, message, 500)
