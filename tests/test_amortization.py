"""
Test suite for amortization module

Tests the fixed-payment schedule, due-date generation and the simple-interest
simulator. All financial math must be exact to the cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from microcredit.amortization import (
    PaymentFrequency, compute_schedule, due_date_for, add_months,
    simulate_simple_interest
)
from microcredit.errors import ValidationError


class TestPaymentFrequency:
    """Test frequency parsing and period conversion"""

    def test_periods_per_year(self):
        assert PaymentFrequency.MENSUAL.periods_per_year == 12
        assert PaymentFrequency.QUINCENAL.periods_per_year == 24
        assert PaymentFrequency.SEMANAL.periods_per_year == 52

    def test_parse_is_whitespace_and_case_tolerant(self):
        assert PaymentFrequency.parse(" mensual ") == PaymentFrequency.MENSUAL
        assert PaymentFrequency.parse("QUINCENAL") == PaymentFrequency.QUINCENAL
        assert PaymentFrequency.parse(PaymentFrequency.SEMANAL) == PaymentFrequency.SEMANAL

    def test_parse_rejects_unknown_frequency(self):
        with pytest.raises(ValidationError):
            PaymentFrequency.parse("Monthly")


class TestDueDates:
    """Due dates advance by calendar months or fixed day offsets"""

    def test_monthly_due_dates_clamp_to_month_end(self):
        start = date(2024, 1, 31)
        assert due_date_for(start, PaymentFrequency.MENSUAL, 1) == date(2024, 2, 29)
        assert due_date_for(start, PaymentFrequency.MENSUAL, 2) == date(2024, 3, 31)
        assert due_date_for(start, PaymentFrequency.MENSUAL, 12) == date(2025, 1, 31)

    def test_quincenal_uses_fifteen_day_offsets(self):
        start = date(2024, 1, 1)
        assert due_date_for(start, PaymentFrequency.QUINCENAL, 1) == date(2024, 1, 16)
        assert due_date_for(start, PaymentFrequency.QUINCENAL, 2) == date(2024, 1, 31)

    def test_semanal_uses_seven_day_offsets(self):
        start = date(2024, 1, 1)
        assert due_date_for(start, PaymentFrequency.SEMANAL, 1) == date(2024, 1, 8)
        assert due_date_for(start, PaymentFrequency.SEMANAL, 4) == date(2024, 1, 29)

    def test_add_months_across_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)


class TestComputeSchedule:
    """Test fixed-payment annuity schedules"""

    def test_reference_monthly_loan(self):
        """1000 at 12% over 12 monthly periods"""
        schedule = compute_schedule(
            principal=Decimal('1000'),
            annual_rate_percent=Decimal('12'),
            period_count=12,
            frequency="Mensual",
            start_date=date(2024, 1, 1)
        )

        assert schedule.periodic_payment == Decimal('88.85')
        assert len(schedule.installments) == 12

        first = schedule.installments[0]
        assert first.installment_number == 1
        assert first.interest == Decimal('10.00')
        assert first.amount == Decimal('88.85')
        assert first.principal == Decimal('78.85')
        assert first.due_date == date(2024, 2, 1)

        interests = [row.interest for row in schedule.installments]
        assert all(a >= b for a, b in zip(interests, interests[1:]))
        assert interests[0] > interests[-1]

        assert schedule.installments[-1].remaining_balance == Decimal('0.00')
        assert schedule.total_interest == Decimal('66.19')
        assert schedule.total_payment == Decimal('1066.19')

    @pytest.mark.parametrize("principal,rate,periods,frequency", [
        ('1000', '12', 12, 'Mensual'),
        ('2500', '18.5', 24, 'Quincenal'),
        ('777.77', '9', 52, 'Semanal'),
        ('10000', '36', 36, 'Mensual'),
        ('150', '5', 1, 'Mensual'),
    ])
    def test_amounts_sum_to_principal_plus_interest(self, principal, rate, periods, frequency):
        schedule = compute_schedule(principal, rate, periods, frequency, date(2024, 3, 15))

        total = sum(row.amount for row in schedule.installments)
        assert total == Decimal(principal) + schedule.total_interest
        assert [row.installment_number for row in schedule.installments] == list(range(1, periods + 1))
        assert schedule.installments[-1].remaining_balance == Decimal('0.00')

    def test_zero_rate_divides_principal_evenly(self):
        schedule = compute_schedule(Decimal('1000'), 0, 3, PaymentFrequency.MENSUAL, date(2024, 1, 1))

        assert schedule.total_interest == Decimal('0.00')
        assert [row.amount for row in schedule.installments] == [
            Decimal('333.33'), Decimal('333.33'), Decimal('333.34')
        ]
        assert all(row.interest == Decimal('0.00') for row in schedule.installments)

    def test_missing_rate_means_zero(self):
        schedule = compute_schedule('1200', None, 12, 'Mensual', '2024-01-01')

        assert schedule.periodic_payment == Decimal('100.00')
        assert all(row.amount == Decimal('100.00') for row in schedule.installments)

    def test_invalid_inputs(self):
        with pytest.raises(ValidationError):
            compute_schedule(0, 12, 12, 'Mensual', date(2024, 1, 1))
        with pytest.raises(ValidationError):
            compute_schedule(1000, -1, 12, 'Mensual', date(2024, 1, 1))
        with pytest.raises(ValidationError):
            compute_schedule(1000, 12, 0, 'Mensual', date(2024, 1, 1))
        with pytest.raises(ValidationError):
            compute_schedule(1000, 12, 12, 'Mensual', 'not-a-date')

    @pytest.mark.parametrize("bad", ['NaN', 'Infinity', '-Infinity', '1E+30', Decimal('NaN')])
    def test_non_finite_or_oversized_principal(self, bad):
        with pytest.raises(ValidationError):
            compute_schedule(bad, '12', 12, 'Mensual', date(2024, 1, 1))

    def test_non_finite_or_oversized_rate(self):
        with pytest.raises(ValidationError):
            compute_schedule('1000', 'Infinity', 12, 'Mensual', date(2024, 1, 1))
        with pytest.raises(ValidationError):
            compute_schedule('1000', '1E+30', 12, 'Mensual', date(2024, 1, 1))

    def test_sub_cent_principal(self):
        with pytest.raises(ValidationError):
            compute_schedule('1000.005', '12', 12, 'Mensual', date(2024, 1, 1))


class TestSimpleInterestSimulator:
    """Test the promotional flat-rate simulator"""

    def test_reference_simulation(self):
        """5000 over 24 months selects the 20% tier"""
        result = simulate_simple_interest(Decimal('5000'), 24)

        assert result.flat_rate == Decimal('0.20')
        assert result.total_interest == Decimal('1000.00')
        assert result.monthly_payment == Decimal('250.00')
        assert result.total_payment == Decimal('6000.00')
        assert result.total_insurance == Decimal('360.00')
        assert result.monthly_payment_with_insurance == Decimal('265.00')
        assert result.legal_fees == Decimal('100.00')
        assert len(result.rows) == 24

    def test_rows_split_principal_and_interest_evenly(self):
        result = simulate_simple_interest('3000', 12)

        assert result.monthly_payment == Decimal('275.00')
        assert all(row.principal == Decimal('250.00') for row in result.rows)
        assert all(row.interest == Decimal('25.00') for row in result.rows)
        assert result.rows[0].balance == Decimal('2750.00')
        assert result.rows[-1].balance == Decimal('0.00')

    def test_balance_never_goes_negative(self):
        result = simulate_simple_interest('10000', 36)

        assert result.monthly_payment == Decimal('361.11')
        assert all(row.balance >= Decimal('0') for row in result.rows)
        assert result.rows[-1].balance == Decimal('0.00')

    def test_without_insurance(self):
        result = simulate_simple_interest('5000', 12, include_insurance=False)

        assert result.total_insurance == Decimal('0.00')
        assert result.monthly_payment_with_insurance == result.monthly_payment

    def test_amount_outside_range(self):
        with pytest.raises(ValidationError):
            simulate_simple_interest('2999.99', 12)
        with pytest.raises(ValidationError):
            simulate_simple_interest('10000.01', 12)

    def test_unsupported_term(self):
        with pytest.raises(ValidationError):
            simulate_simple_interest('5000', 18)
