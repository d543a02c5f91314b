from datetime import date
from decimal import Decimal

import pytest

from errors import ValidationError
from frequency import MONTHLY_MULTIPLIERS, monthly_run_rate, normalize, parse_frequency
from models import Contract, ContractKind, Frequency


def test_normalize_known_frequencies() -> None:
    assert normalize(10_000, Frequency.monthly) == Decimal(10_000)
    assert normalize(12_000, Frequency.annual) == Decimal(1_000)
    assert normalize(100, Frequency.daily) == Decimal(3_000)
    assert normalize(250, Frequency.weekly) == Decimal(1_000)
    assert normalize(900, Frequency.quarterly) == Decimal(300)
    assert normalize(600, "semiannual") == Decimal(100)


def test_normalize_returns_decimal_for_uneven_division() -> None:
    monthly = normalize(1_000, Frequency.quarterly)
    assert isinstance(monthly, Decimal)
    assert monthly.quantize(Decimal("0.01")) == Decimal("333.33")


def test_every_frequency_has_a_multiplier() -> None:
    assert set(MONTHLY_MULTIPLIERS) == set(Frequency)


def test_unknown_frequency_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_frequency("fortnightly")
    with pytest.raises(ValidationError):
        normalize(100, "biweekly")


def _contract(kind: ContractKind, amount: int, frequency: Frequency, **kwargs) -> Contract:
    return Contract(
        name="c",
        kind=kind,
        amount_cents=amount,
        frequency=frequency,
        start_date=date(2024, 1, 1),
        is_active=kwargs.get("is_active", True),
        deleted_at=kwargs.get("deleted_at"),
    )


def test_monthly_run_rate_skips_inactive_contracts() -> None:
    contracts = [
        _contract(ContractKind.revenue, 120_000, Frequency.annual),
        _contract(ContractKind.revenue, 5_000, Frequency.monthly),
        _contract(ContractKind.expense, 1_000, Frequency.weekly),
        _contract(ContractKind.expense, 99_999, Frequency.monthly, is_active=False),
    ]
    stats = monthly_run_rate(contracts)
    assert stats["monthly_revenue_cents"] == Decimal(15_000)
    assert stats["monthly_expense_cents"] == Decimal(4_000)
    assert stats["net_monthly_cents"] == Decimal(11_000)
