"""
Reporting Engine Module

Read-only portfolio dashboards folded over the loan and savings ledgers:
portfolio totals, delinquency aging buckets, payment activity, savings
KPIs and advisor effectiveness. Nothing here writes to storage.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import csv
import io
import json

from .loans import InstallmentStatus, LoanManager, LoanStatus
from .money import ZERO, round_money
from .savings import PlanStatus, SavingsManager
from .storage import StorageInterface


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


class ServiceStatus(Enum):
    """Overall state of an advisory service record"""
    SOLICITADO = "SOLICITADO"
    EN_EJECUCION = "EN_EJECUCION"
    FINALIZADO = "FINALIZADO"
    CANCELADO = "CANCELADO"


ACTIVE_SERVICE_STATES = (ServiceStatus.SOLICITADO, ServiceStatus.EN_EJECUCION)


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {
                'row_count': len(self.data),
                'currency': 'USD'
            }


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part / whole * 100 rounded to 2 places, 0 when whole is 0"""
    if not whole:
        return Decimal('0.00')
    return round_money(Decimal(part) / Decimal(whole) * 100)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReportingEngine:
    """
    Portfolio reporting over loans, savings plans and advisory services
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        savings_manager: SavingsManager,
        clock: Optional[Callable[[], datetime]] = None,
        aging_bucket_bounds: Sequence[int] = (30, 60, 90),
        currency: str = "USD"
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.savings_manager = savings_manager
        self.clock = clock or _utcnow
        self.aging_bucket_bounds = tuple(sorted(aging_bucket_bounds))
        self.currency = currency
        self.services_table = "services"

    def _result(self, report_id: str, started: datetime, data: List[Dict[str, Any]],
                totals: Dict[str, Any], period_start: Optional[datetime] = None) -> ReportResult:
        return ReportResult(
            report_id=report_id,
            generated_at=self.clock(),
            period_start=period_start or started.replace(hour=0, minute=0, second=0, microsecond=0),
            period_end=started,
            data=data,
            totals=totals,
            metadata={
                'row_count': len(data),
                'currency': self.currency
            }
        )

    # --- loans ------------------------------------------------------------

    def portfolio_overview(self) -> ReportResult:
        """
        Generate the loan portfolio overview

        Outstanding is every non-PAGADO installment; overdue is the subset
        whose due date has passed, whatever its stored status.
        """
        now = self.clock()
        today = now.date()
        loans = self.loan_manager.get_all_loans()

        total_outstanding = ZERO
        total_overdue = ZERO
        installment_count = 0
        rates = []

        for loan in loans:
            installment_count += len(loan.installments)
            if loan.interest_rate is not None:
                rates.append(loan.interest_rate)
            for inst in loan.installments:
                if inst.status == InstallmentStatus.PAGADO:
                    continue
                total_outstanding += inst.amount
                if inst.due_date < today:
                    total_overdue += inst.amount

        totals = {
            'total_loans': len(loans),
            'active_loans': sum(1 for loan in loans if loan.status != LoanStatus.COMPLETADO),
            'total_outstanding': round_money(total_outstanding),
            'total_overdue': round_money(total_overdue),
            'average_interest_rate': round_money(sum(rates, ZERO) / len(rates)) if rates else Decimal('0.00'),
            'average_installments_per_loan': (
                round_money(Decimal(installment_count) / len(loans)) if loans else Decimal('0.00')
            ),
            'currency': self.currency,
        }
        return self._result("portfolio_overview", now, [dict(totals)], totals)

    def _buckets(self) -> List[Tuple[str, int, Optional[int]]]:
        buckets = []
        lower = 1
        for upper in self.aging_bucket_bounds:
            buckets.append((f"{lower}-{upper}", lower, upper))
            lower = upper + 1
        buckets.append((f">{self.aging_bucket_bounds[-1]}", lower, None))
        return buckets

    def delinquency_aging(self) -> ReportResult:
        """
        Generate delinquency aging report with buckets

        Days overdue are whole days between the due date and today; paid
        installments and installments not yet past due are skipped.
        """
        now = self.clock()
        today = now.date()
        buckets = self._buckets()
        amounts = {label: ZERO for label, _, _ in buckets}
        counts = {label: 0 for label, _, _ in buckets}

        for loan in self.loan_manager.get_all_loans():
            for inst in loan.installments:
                if inst.status == InstallmentStatus.PAGADO:
                    continue
                days = (today - inst.due_date).days
                if days <= 0:
                    continue
                for label, low, high in buckets:
                    if days >= low and (high is None or days <= high):
                        amounts[label] += inst.amount
                        counts[label] += 1
                        break

        total = sum(amounts.values(), ZERO)
        data = [
            {
                'bucket': label,
                'min_days': low,
                'max_days': high,
                'amount': round_money(amounts[label]),
                'count': counts[label],
                'percentage': percentage(amounts[label], total),
            }
            for label, low, high in buckets
        ]
        totals = {
            'total_overdue': round_money(total),
            'overdue_installments': sum(counts.values()),
        }
        return self._result("delinquency_aging", now, data, totals)

    def payment_activity(self, days_range: int = 30) -> ReportResult:
        """
        Reported, approved and rejected installment payments over a trailing window

        Resolution time is measured from the client's report to the
        recorded payment date of approved installments.
        """
        now = self.clock()
        since = now - timedelta(days=days_range)

        def in_window(moment: Optional[datetime]) -> bool:
            return moment is not None and since <= moment <= now

        reported = approved = rejected = 0
        resolution_hours = []

        for loan in self.loan_manager.get_all_loans():
            for inst in loan.installments:
                if in_window(inst.payment_report_date):
                    reported += 1
                if inst.status == InstallmentStatus.PAGADO and in_window(inst.payment_date):
                    approved += 1
                    if inst.payment_report_date:
                        elapsed = inst.payment_date - inst.payment_report_date
                        resolution_hours.append(Decimal(str(elapsed.total_seconds())) / 3600)
                if in_window(inst.rejection_date):
                    rejected += 1

        totals = {
            'days_range': days_range,
            'reported': reported,
            'approved': approved,
            'rejected': rejected,
            'average_resolution_hours': (
                round_money(sum(resolution_hours, ZERO) / len(resolution_hours))
                if resolution_hours else Decimal('0.00')
            ),
        }
        return self._result("payment_activity", now, [dict(totals)], totals, period_start=since)

    def overdue_installments(self) -> List[Dict[str, Any]]:
        """Every non-paid installment past its due date, most overdue first"""
        today = self.clock().date()
        rows = []
        for loan in self.loan_manager.get_all_loans():
            for inst in loan.installments:
                if not inst.is_overdue(today):
                    continue
                rows.append({
                    'loan_id': loan.id,
                    'user_id': loan.user_id,
                    'user_name': loan.user_name,
                    'installment_number': inst.installment_number,
                    'due_date': inst.due_date,
                    'amount': inst.amount,
                    'status': inst.status.value,
                    'days_overdue': (today - inst.due_date).days,
                })
        rows.sort(key=lambda row: row['days_overdue'], reverse=True)
        return rows

    def loan_stats(self) -> ReportResult:
        """
        Loan amounts collected and overdue, counts by status and the overdue list

        Collected sums PAGADO installments; overdue sums installments
        whose stored status is VENCIDO.
        """
        now = self.clock()
        loans = self.loan_manager.get_all_loans()

        by_status = {status.value: 0 for status in LoanStatus}
        total_amount = ZERO
        collected = ZERO
        overdue = ZERO
        for loan in loans:
            by_status[loan.status.value] += 1
            total_amount += loan.loan_amount
            for inst in loan.installments:
                if inst.status == InstallmentStatus.PAGADO:
                    collected += inst.amount
                elif inst.status == InstallmentStatus.VENCIDO:
                    overdue += inst.amount

        totals = {
            'total_loan_amount': round_money(total_amount),
            'total_collected': round_money(collected),
            'total_overdue': round_money(overdue),
            'loans_by_status': by_status,
        }
        return self._result("loan_stats", now, self.overdue_installments(), totals)

    # --- savings and advisors ---------------------------------------------

    def savings_kpis(self) -> ReportResult:
        """Active plans, capital saved in them and the average per plan"""
        now = self.clock()
        active = [
            plan for plan in self.savings_manager.get_all_plans()
            if plan.estado_plan == PlanStatus.ACTIVO
        ]
        capital = sum((plan.saldo_actual for plan in active), ZERO)

        totals = {
            'total_active_plans': len(active),
            'total_capital_saved': round_money(capital),
            'average_savings_per_plan': round_money(capital / len(active)) if active else Decimal('0.00'),
            'currency': self.currency,
        }
        return self._result("savings_kpis", now, [dict(totals)], totals)

    def advisor_stats(self) -> ReportResult:
        """
        Per advisor: active savings plans, capital managed, services and effectiveness

        Effectiveness is finalized / (active + finalized) * 100, and 0 for
        an advisor with no active or finalized services.
        """
        now = self.clock()
        advisors: Dict[str, Dict[str, Any]] = {}

        def entry(advisor_id: str, name: Optional[str]) -> Dict[str, Any]:
            row = advisors.setdefault(advisor_id, {
                'advisor_id': advisor_id,
                'advisor_name': name or "",
                'active_savings_count': 0,
                'total_capital_managed': ZERO,
                'active_services_count': 0,
                'finalized_services_count': 0,
            })
            if name and not row['advisor_name']:
                row['advisor_name'] = name
            return row

        for plan in self.savings_manager.get_all_plans():
            if not plan.advisor_id or plan.estado_plan != PlanStatus.ACTIVO:
                continue
            row = entry(plan.advisor_id, plan.advisor_name)
            row['active_savings_count'] += 1
            row['total_capital_managed'] += plan.saldo_actual

        for service in self.storage.load_all(self.services_table):
            advisor_id = service.get('advisorId')
            if not advisor_id:
                continue
            try:
                status = ServiceStatus(str(service.get('estadoGeneral', '')).strip().upper())
            except ValueError:
                continue
            row = entry(advisor_id, service.get('advisorName'))
            if status in ACTIVE_SERVICE_STATES:
                row['active_services_count'] += 1
            elif status == ServiceStatus.FINALIZADO:
                row['finalized_services_count'] += 1

        data = []
        for row in sorted(advisors.values(), key=lambda r: r['advisor_name'] or r['advisor_id']):
            handled = row['active_services_count'] + row['finalized_services_count']
            row['total_capital_managed'] = round_money(row['total_capital_managed'])
            row['effectiveness'] = percentage(Decimal(row['finalized_services_count']), Decimal(handled))
            data.append(row)

        totals = {
            'advisors': len(data),
            'total_capital_managed': round_money(sum((r['total_capital_managed'] for r in data), ZERO)),
        }
        return self._result("advisor_stats", now, data, totals)

    # --- export -----------------------------------------------------------

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat(),
                'period_end': result.period_end.isoformat(),
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            return self.export_rows(result.data, ReportFormat.CSV)

        else:
            raise ValueError(f"Unsupported export format: {format}")

    def export_rows(self, rows: List[Dict[str, Any]], format: ReportFormat) -> str:
        """Serialize plain rows for download"""
        if format == ReportFormat.JSON:
            return json.dumps(rows, indent=2, default=str)

        if format == ReportFormat.CSV:
            output = io.StringIO()
            if rows:
                headers = list(rows[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers, extrasaction='ignore')
                writer.writeheader()
                for row in rows:
                    writer.writerow({k: _cell(v) for k, v in row.items()})
            csv_content = output.getvalue()
            output.close()
            return csv_content

        raise ValueError(f"Unsupported export format: {format}")


def _cell(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    return value
