"""Parsing helpers shared by the JSON blueprints. Bad input raises InvalidRequest (400)."""

from datetime import date, datetime

from flask import request

from ledger.errors import InvalidRequest


def payload() -> dict:
    """JSON body, falling back to form fields."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _int_value(name: str, raw, *, min_value: int | None = None) -> int:
    if isinstance(raw, bool):
        raise InvalidRequest(f"{name} must be an integer", field=name)
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"{name} must be an integer", field=name) from exc

    if min_value is not None and value < min_value:
        raise InvalidRequest(f"{name} must be at least {min_value}", field=name)
    return value


def require_int(source, name: str, *, min_value: int | None = None) -> int:
    raw = source.get(name)
    if raw is None or str(raw).strip() == "":
        raise InvalidRequest(f"{name} is required", field=name)
    return _int_value(name, raw, min_value=min_value)


def optional_int(source, name: str, *, min_value: int | None = None) -> int | None:
    raw = source.get(name)
    if raw is None or str(raw).strip() == "":
        return None
    return _int_value(name, raw, min_value=min_value)


def _date_value(name: str, raw) -> date:
    try:
        return datetime.strptime(str(raw).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"{name} must be a date (YYYY-MM-DD)", field=name) from exc


def require_date(source, name: str) -> date:
    raw = source.get(name)
    if raw is None or str(raw).strip() == "":
        raise InvalidRequest(f"{name} is required", field=name)
    return _date_value(name, raw)


def optional_date(source, name: str) -> date | None:
    raw = source.get(name)
    if raw is None or str(raw).strip() == "":
        return None
    return _date_value(name, raw)


def runs_response(runs, *, created: bool = False, unsynced=None, **extra):
    """Body and status for a mutation that started one or more cascades.

    Anything short of a complete ledger update answers 202, created or not.
    """
    body = dict(extra)
    body["runs"] = [run.to_dict() for run in runs]
    fully_consistent = all(run.fully_consistent for run in runs)
    if unsynced is not None:
        body["unsynced"] = [item.to_dict() for item in unsynced]
        fully_consistent = fully_consistent and not unsynced
    body["fully_consistent"] = fully_consistent

    if not fully_consistent:
        return body, 202
    return body, 201 if created else 200


def report_response(report, *, created: bool = False, **extra):
    return runs_response(report.runs, created=created, unsynced=report.unsynced, **extra)
