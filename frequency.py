from decimal import Decimal
from fractions import Fraction
from typing import Iterable, Union

from errors import ValidationError
from models import Contract, ContractKind, Frequency

# Monthly-equivalent multipliers. Every Frequency member must appear here.
MONTHLY_MULTIPLIERS: dict[Frequency, Fraction] = {
    Frequency.daily: Fraction(30),
    Frequency.weekly: Fraction(4),
    Frequency.monthly: Fraction(1),
    Frequency.quarterly: Fraction(1, 3),
    Frequency.semiannual: Fraction(1, 6),
    Frequency.annual: Fraction(1, 12),
}

_missing = set(Frequency) - set(MONTHLY_MULTIPLIERS)
if _missing:
    raise RuntimeError(
        "No monthly multiplier for " + ", ".join(sorted(f.value for f in _missing))
    )


def parse_frequency(value: Union[str, Frequency]) -> Frequency:
    try:
        return Frequency(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown frequency: {value!r}") from exc


def normalize(amount: Union[int, Decimal], frequency: Union[str, Frequency]) -> Decimal:
    """Monthly-equivalent of ``amount`` charged once per ``frequency``.

    Only meant for aggregate figures such as the recurring run-rate; occurrence
    amounts always stay at the nominal per-occurrence value.
    """
    multiplier = MONTHLY_MULTIPLIERS[parse_frequency(frequency)]
    return Decimal(amount) * multiplier.numerator / multiplier.denominator


def monthly_run_rate(contracts: Iterable[Contract]) -> dict[str, Decimal]:
    revenue = Decimal(0)
    expense = Decimal(0)
    for contract in contracts:
        if not contract.is_active or contract.deleted_at is not None:
            continue
        monthly = normalize(contract.amount_cents, contract.frequency)
        if contract.kind == ContractKind.revenue:
            revenue += monthly
        else:
            expense += monthly
    return {
        "monthly_revenue_cents": revenue,
        "monthly_expense_cents": expense,
        "net_monthly_cents": revenue - expense,
    }
