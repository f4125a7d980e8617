"""
Typed errors for the stock ledger.

Every error carries a machine readable ``code``, the HTTP status the JSON
layer answers with, and structured ``details`` so callers never have to
parse messages:

    LedgerError
    +-- NotFound                 no entry, and backfill was not requested
    +-- RunNotFound              unknown propagation run id
    +-- ConstraintViolation      duplicate key / invalid quantity
    +-- PropagationInterrupted   a batch failed; resumable from ``resume_from``
    +-- InconsistentHistory      stored balances or carry-over broken outside a cascade
    +-- PropagationBusy          another cascade holds the (location, item)
    +-- InvalidRequest           malformed input at the HTTP/CLI edge
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if hasattr(value, "isoformat") else value
        return payload


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404

    def __init__(self, location_id: int, item_id: int, day):
        super().__init__(
            f"No ledger entry for location {location_id}, item {item_id} on {day}",
            location_id=location_id,
            item_id=item_id,
            day=day,
        )


class RunNotFound(LedgerError):
    code = "run_not_found"
    status_code = 404

    def __init__(self, run_id: int):
        super().__init__(f"No propagation run {run_id}", run_id=run_id)


class ConstraintViolation(LedgerError):
    code = "constraint_violation"
    status_code = 409


class PropagationInterrupted(LedgerError):
    """A batch failed mid-cascade. Days up to ``last_committed_day`` are consistent."""

    code = "propagation_interrupted"
    status_code = 409

    def __init__(self, result, cause: BaseException | None = None):
        self.result = result
        self.cause = cause
        # set by ledger.service when the cascade is tracked by a PropagationRun
        self.run = None
        super().__init__(
            f"Propagation stopped after {result.progress_message}; "
            f"resume from {result.resume_from}",
            location_id=result.location_id,
            item_id=result.item_id,
            days_done=result.days_done,
            days_total=result.days_total,
            last_committed_day=result.last_committed_day,
            resume_from=result.resume_from,
        )


class InconsistentHistory(LedgerError):
    code = "inconsistent_history"
    status_code = 409

    def __init__(self, violations: list):
        self.violations = violations
        first = violations[0] if violations else None
        super().__init__(
            f"{len(violations)} ledger continuity violation(s)"
            + (f", first on {first.day}" if first is not None else ""),
            violations=[violation.to_dict() for violation in violations],
        )


class PropagationBusy(LedgerError):
    code = "propagation_busy"
    status_code = 423

    def __init__(self, location_id: int, item_id: int, timeout: float):
        super().__init__(
            f"Another ledger update for location {location_id}, item {item_id} "
            f"did not finish within {timeout:g}s",
            location_id=location_id,
            item_id=item_id,
        )


class InvalidRequest(LedgerError):
    code = "invalid_request"
    status_code = 400
