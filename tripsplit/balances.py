"""Per-contributor totals and even-split balances for a single trip.

Everything here is a pure function of its arguments: callers fetch the
contributors and expenses of one trip and pass them in, and the result is
recomputed from scratch on every call.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Sequence

ZERO = Decimal("0")
CENT = Decimal("0.01")


def amount_or_zero(value: Any) -> Decimal:
    """Read an expense amount, counting anything non-numeric as zero."""
    if isinstance(value, bool) or value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, (int, float)):
        value = str(value)
    if isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            return ZERO
        return amount if amount.is_finite() else ZERO
    return ZERO


def to_cents(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def total_expenses(expenses: Iterable[Mapping[str, Any]]) -> Decimal:
    return sum((amount_or_zero(expense.get("amount")) for expense in expenses), ZERO)


def average_per_person(expenses: Sequence[Mapping[str, Any]], contributor_count: int) -> Decimal:
    # An empty trip divides by one, so the average equals the total spend.
    return total_expenses(expenses) / (contributor_count or 1)


def calculate_contributor_balances(
    contributors: Sequence[Mapping[str, Any]],
    expenses: Sequence[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Return one ``{contributor, total_paid, balance}`` record per contributor.

    ``total_paid`` sums the amounts of the expenses whose
    ``paid_by_contributor_id`` matches the contributor's ``id``, and
    ``balance`` is that total minus the even share of the trip's spend.
    A positive balance means the contributor is owed money. Records keep the
    order of ``contributors``.
    """
    average = average_per_person(expenses, len(contributors))

    balances: List[Dict[str, Any]] = []
    for contributor in contributors:
        total_paid = sum(
            (
                amount_or_zero(expense.get("amount"))
                for expense in expenses
                if expense.get("paid_by_contributor_id") == contributor["id"]
            ),
            ZERO,
        )
        balances.append(
            {
                "contributor": contributor,
                "total_paid": total_paid,
                "balance": total_paid - average,
            }
        )
    return balances


def sort_by_balance(balances: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(balances, key=lambda record: record["balance"], reverse=True)


def spending_by_person(
    contributors: Sequence[Mapping[str, Any]],
    expenses: Sequence[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Totals per paying contributor, largest first.

    Contributors that paid nothing are left out. Expenses pointing at an
    unknown contributor are still counted, under a ``None`` name.
    """
    names = {contributor["id"]: contributor.get("name") for contributor in contributors}
    totals: Dict[Any, Decimal] = {}
    for expense in expenses:
        payer = expense.get("paid_by_contributor_id")
        totals[payer] = totals.get(payer, ZERO) + amount_or_zero(expense.get("amount"))

    rows = [
        {"contributor_id": payer, "name": names.get(payer), "amount": amount}
        for payer, amount in totals.items()
    ]
    rows.sort(key=lambda row: row["amount"], reverse=True)
    return rows
