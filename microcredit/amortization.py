"""
Amortization Module

Two distinct, explicitly separate schedule algorithms:

* :func:`compute_schedule` - fixed-payment (French) annuity on a declining
  balance, used when a loan is created. Annual rates are converted to a
  per-period rate by dividing by 12 (Mensual), 24 (Quincenal) or 52
  (Semanal); due dates advance by calendar months for Mensual and by fixed
  15/7-day offsets otherwise. Both are deliberate simplifications, not
  day-count conventions.
* :func:`simulate_simple_interest` - the promotional simulator: a flat rate
  chosen by term tier, spread evenly over the months.

All arithmetic runs at full Decimal precision; values are rounded to cents
only when a row is emitted.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import calendar

from .errors import ValidationError
from .money import Amount, ZERO, require_positive, round_money, to_decimal


class PaymentFrequency(Enum):
    """Installment frequency offered on the loan form"""
    MENSUAL = "Mensual"
    QUINCENAL = "Quincenal"
    SEMANAL = "Semanal"

    @property
    def periods_per_year(self) -> int:
        return {
            PaymentFrequency.MENSUAL: 12,
            PaymentFrequency.QUINCENAL: 24,
            PaymentFrequency.SEMANAL: 52,
        }[self]

    @classmethod
    def parse(cls, value) -> 'PaymentFrequency':
        """Accept the enum itself or its label in any casing/spacing"""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == normalized or member.name.lower() == normalized:
                return member
        raise ValidationError(f"Unsupported payment frequency: {value!r}")


@dataclass
class ScheduledInstallment:
    """Single row of an amortization schedule (rounded at emission)"""
    installment_number: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal
    remaining_balance: Decimal


@dataclass
class AmortizationSchedule:
    """Result of :func:`compute_schedule`"""
    installments: List[ScheduledInstallment]
    periodic_payment: Decimal
    total_interest: Decimal
    principal: Decimal

    @property
    def total_payment(self) -> Decimal:
        return self.principal + self.total_interest


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, frequency: PaymentFrequency, period: int) -> date:
    """Due date of the ``period``-th installment counted from the start date"""
    if frequency == PaymentFrequency.MENSUAL:
        return add_months(start_date, period)
    if frequency == PaymentFrequency.QUINCENAL:
        return start_date + timedelta(days=15 * period)
    return start_date + timedelta(days=7 * period)


def as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}") from e
    raise ValidationError(f"Invalid date: {value!r}")


def _period_count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"Term must be a positive whole number of periods, got {value!r}")
    return value


def compute_schedule(
    principal: Amount,
    annual_rate_percent: Optional[Amount],
    period_count: int,
    frequency,
    start_date
) -> AmortizationSchedule:
    """
    Compute a fixed-payment amortization schedule.

    Args:
        principal: Loan amount
        annual_rate_percent: Annual rate in percent (12 means 12%); None means 0
        period_count: Number of installments
        frequency: PaymentFrequency or its label
        start_date: Disbursement date; the first installment falls one period later

    Returns:
        AmortizationSchedule whose amounts sum exactly to principal + total interest
    """
    principal = require_positive(principal, "principal")
    rate = to_decimal(annual_rate_percent if annual_rate_percent is not None else 0, "interest rate")
    if rate < ZERO:
        raise ValidationError(f"Interest rate cannot be negative, got {rate}")
    n = _period_count(period_count)
    frequency = PaymentFrequency.parse(frequency)
    start = as_date(start_date)

    periodic_rate = rate / Decimal('100') / Decimal(frequency.periods_per_year)

    if periodic_rate == ZERO:
        # Pure capital amortization; the annuity formula would divide by zero
        payment = principal / Decimal(n)
    else:
        factor = (Decimal('1') + periodic_rate) ** n
        payment = principal * periodic_rate * factor / (factor - Decimal('1'))

    raw_rows = []
    balance = principal
    total_interest_raw = ZERO
    for period in range(1, n + 1):
        interest = balance * periodic_rate
        principal_part = payment - interest
        balance -= principal_part
        if period == n:
            # Fold the floating residual into the final installment
            principal_part += balance
            balance = ZERO
        total_interest_raw += interest
        raw_rows.append((period, interest, principal_part + interest, balance))

    total_interest = round_money(total_interest_raw)
    total_due = round_money(principal) + total_interest

    installments: List[ScheduledInstallment] = []
    emitted = ZERO
    for period, interest, amount_raw, balance_after in raw_rows:
        interest_out = round_money(interest)
        if period == n:
            # Absorb the cent drift of the rounded rows above
            amount_out = total_due - emitted
            balance_out = round_money(ZERO)
        else:
            amount_out = round_money(amount_raw)
            balance_out = round_money(balance_after)
        emitted += amount_out
        installments.append(ScheduledInstallment(
            installment_number=period,
            due_date=due_date_for(start, frequency, period),
            amount=amount_out,
            principal=amount_out - interest_out,
            interest=interest_out,
            remaining_balance=balance_out
        ))

    return AmortizationSchedule(
        installments=installments,
        periodic_payment=round_money(payment),
        total_interest=total_interest,
        principal=round_money(principal)
    )


# --- Simple-interest simulator -------------------------------------------

# Flat rate for the whole term, selected by term tier (not annualized)
SIMULATOR_RATE_TIERS: Dict[int, Decimal] = {
    12: Decimal('0.10'),
    24: Decimal('0.20'),
    36: Decimal('0.30'),
}
SIMULATOR_MIN_AMOUNT = Decimal('3000')
SIMULATOR_MAX_AMOUNT = Decimal('10000')
SIMULATOR_INSURANCE_FEE = Decimal('15')  # per month
SIMULATOR_LEGAL_FEE_RATE = Decimal('0.02')


@dataclass
class SimulationRow:
    month: int
    payment: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal


@dataclass
class SimulationResult:
    amount: Decimal
    term_months: int
    flat_rate: Decimal
    monthly_payment: Decimal  # excludes insurance
    total_payment: Decimal    # excludes insurance
    total_interest: Decimal
    total_insurance: Decimal
    monthly_payment_with_insurance: Decimal
    legal_fees: Decimal
    rows: List[SimulationRow] = field(default_factory=list)


def simulate_simple_interest(
    amount: Amount,
    term_months: int,
    include_insurance: bool = True,
    min_amount: Amount = SIMULATOR_MIN_AMOUNT,
    max_amount: Amount = SIMULATOR_MAX_AMOUNT,
    insurance_fee: Amount = SIMULATOR_INSURANCE_FEE,
    legal_fee_rate: Amount = SIMULATOR_LEGAL_FEE_RATE,
    rate_tiers: Optional[Dict[int, Decimal]] = None
) -> SimulationResult:
    """
    Promotional simple-interest simulation.

    totalInterest = amount * tierRate; the monthly payment is
    (amount + totalInterest) / months, with principal and interest each
    split evenly across the months.
    """
    principal = require_positive(amount, "amount")
    low, high = to_decimal(min_amount), to_decimal(max_amount)
    if principal < low or principal > high:
        raise ValidationError(f"Amount must be between {low} and {high}")

    tiers = rate_tiers or SIMULATOR_RATE_TIERS
    if term_months not in tiers:
        raise ValidationError(
            f"Unsupported term {term_months!r}; choose one of {sorted(tiers)}"
        )
    n = Decimal(term_months)
    flat_rate = tiers[term_months]
    fee = to_decimal(insurance_fee)

    total_interest = principal * flat_rate
    monthly_payment = (principal + total_interest) / n
    principal_per_month = principal / n
    interest_per_month = total_interest / n

    rows = []
    balance = principal
    for month in range(1, term_months + 1):
        balance -= principal_per_month
        rows.append(SimulationRow(
            month=month,
            payment=round_money(monthly_payment),
            principal=round_money(principal_per_month),
            interest=round_money(interest_per_month),
            # Avoid negative balances from rounding
            balance=round_money(balance if balance > Decimal('0.01') else ZERO)
        ))

    total_insurance = fee * n if include_insurance else ZERO
    return SimulationResult(
        amount=round_money(principal),
        term_months=term_months,
        flat_rate=flat_rate,
        monthly_payment=round_money(monthly_payment),
        total_payment=round_money(principal + total_interest),
        total_interest=round_money(total_interest),
        total_insurance=round_money(total_insurance),
        monthly_payment_with_insurance=round_money(monthly_payment + (fee if include_insurance else ZERO)),
        legal_fees=round_money(principal * to_decimal(legal_fee_rate)),
        rows=rows
    )
