from datetime import date, datetime

import pytest

from dineflow.core.dates import add_billing_cycle, add_months, end_of_day
from dineflow.models.subscription import BillingCycle


def test_monthly_from_jan_31_clamps_to_leap_february():
    assert add_months(datetime(2024, 1, 31, 10, 30), 1) == datetime(2024, 2, 29, 10, 30)


def test_monthly_from_jan_31_clamps_to_february_28():
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)


def test_monthly_crosses_year():
    assert add_billing_cycle(datetime(2024, 12, 15, 8, 0), BillingCycle.MONTHLY) == datetime(2025, 1, 15, 8, 0)


def test_yearly_from_leap_day():
    assert add_billing_cycle(datetime(2024, 2, 29), BillingCycle.YEARLY) == datetime(2025, 2, 28)


def test_billing_cycle_accepts_plain_string():
    assert add_billing_cycle(datetime(2024, 3, 1), "MONTHLY") == datetime(2024, 4, 1)


def test_unknown_cycle():
    with pytest.raises(ValueError):
        add_billing_cycle(datetime(2024, 3, 1), "WEEKLY")


def test_end_of_day_is_next_midnight():
    assert end_of_day(date(2024, 2, 29)) == datetime(2024, 3, 1)
    assert datetime(2024, 2, 29, 23, 59, 59) < end_of_day(date(2024, 2, 29))
