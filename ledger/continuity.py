"""Read-only checks of closing balances, day-to-day continuity and event totals."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from ledger import store, sync
from ledger.errors import InconsistentHistory

KIND_CLOSING = "closing_mismatch"
KIND_CONTINUITY = "opening_mismatch"
KIND_AGGREGATE = "aggregate_mismatch"


@dataclass(frozen=True)
class Violation:
    kind: str
    location_id: int
    item_id: int
    day: date
    expected: int
    actual: int
    field: str | None = None

    def to_dict(self) -> dict:
        payload = {
            "kind": self.kind,
            "location_id": self.location_id,
            "item_id": self.item_id,
            "day": self.day.isoformat(),
            "expected": self.expected,
            "actual": self.actual,
        }
        if self.field is not None:
            payload["field"] = self.field
        return payload


def _aggregate_violations(location_id: int, entries, start_day: date, end_day: date) -> list[Violation]:
    """Rows whose stored receipt/sale totals differ from the events recorded for that day."""
    violations = []
    entries_by_item: dict[int, list] = {}
    for entry in entries:
        entries_by_item.setdefault(entry.item_id, []).append(entry)

    for item_id, item_entries in entries_by_item.items():
        for synchronizer in (sync.receipts, sync.sales):
            totals = synchronizer.totals_between(location_id, item_id, start_day, end_day)
            for entry in item_entries:
                expected = totals.get(entry.day, 0)
                actual = getattr(entry, synchronizer.field)
                if actual != expected:
                    violations.append(
                        Violation(KIND_AGGREGATE, location_id, item_id, entry.day, expected, actual,
                                  field=synchronizer.field)
                    )
    return violations


def find_violations(
    location_id: int,
    item_id: int | None,
    start_day: date,
    end_day: date,
    *,
    check_aggregates: bool = False,
) -> list[Violation]:
    """Arithmetic and carry-over breaks in a day range.

    With ``check_aggregates`` every row's receipt_qty/sale_qty is also compared
    with the sum of its events, which catches a resync that never ran.
    """
    violations: list[Violation] = []
    previous_by_item = {}

    entries = store.entries_between(location_id, item_id, start_day, end_day)
    for entry in entries:
        expected_closing = store.closing_for(entry.opening_qty, entry.receipt_qty, entry.sale_qty)
        if entry.closing_qty != expected_closing:
            violations.append(
                Violation(KIND_CLOSING, location_id, entry.item_id, entry.day, expected_closing, entry.closing_qty)
            )

        previous = previous_by_item.get(entry.item_id)
        if (
            previous is not None
            and previous.day + timedelta(days=1) == entry.day
            and previous.closing_qty != entry.opening_qty
        ):
            violations.append(
                Violation(KIND_CONTINUITY, location_id, entry.item_id, entry.day, previous.closing_qty, entry.opening_qty)
            )
        previous_by_item[entry.item_id] = entry

    if check_aggregates:
        violations.extend(_aggregate_violations(location_id, entries, start_day, end_day))

    violations.sort(key=lambda violation: (violation.day, violation.item_id))
    return violations


def assert_consistent(
    location_id: int,
    item_id: int | None,
    start_day: date,
    end_day: date,
    *,
    check_aggregates: bool = False,
) -> None:
    violations = find_violations(location_id, item_id, start_day, end_day, check_aggregates=check_aggregates)
    if violations:
        raise InconsistentHistory(violations)
