from __future__ import annotations


class RateUnavailable(LookupError):
    """No usable exchange rate for a currency, even after refresh and fallback."""

    def __init__(self, code: str, reason: str | None = None) -> None:
        message = f"Exchange rate unavailable for currency: {code}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.code = code


class ProviderFetchFailure(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class BudgetExceeded(ValueError):
    def __init__(self, budget_id: int, remaining: object, requested: object) -> None:
        super().__init__(
            f"Budget {budget_id} has {remaining} remaining; cannot deduct {requested}."
        )
        self.budget_id = budget_id
        self.remaining = remaining
        self.requested = requested


class AmbiguousBudget(LookupError):
    """More than one budget period covers the same category and date."""


class BudgetOverlap(ValueError):
    """A new budget period would overlap an existing one for the same category."""


class RecordNotFound(LookupError):
    pass


class InvalidAmount(ValueError):
    pass


class PersistenceFailure(RuntimeError):
    """A database error while reading or writing ledger state."""
