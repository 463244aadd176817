from __future__ import annotations

from typing import Any, Dict


class EngineError(Exception):
    code = "engine_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "message": str(self)}


class ValidationError(EngineError):
    """Rejected input. Raised before any simulation state is touched."""

    code = "validation_error"

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "field": self.field, "reason": self.reason}


class InsufficientHistoryError(EngineError):
    code = "insufficient_history"

    def __init__(self, ticker: str, date: str, available: int, required: int):
        super().__init__(f"{ticker} {date}: {available} trading days available, {required} required")
        self.ticker = ticker
        self.date = date
        self.available = available
        self.required = required

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.code,
            "ticker": self.ticker,
            "date": self.date,
            "available": self.available,
            "required": self.required,
        }


class InconsistentStateError(EngineError):
    """Invariant violation inside the position state machine. Fatal for the run."""

    code = "inconsistent_state"
