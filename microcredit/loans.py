"""
Loan Module

Handles loan creation from an amortization schedule and the lifecycle of
each installment: client payment reports, admin approval or rejection,
overdue derivation and administrative schedule corrections.

Loans are stored as one document that owns its installment array; every
mutation rewrites the array (last write wins at the loan level). Status
history entries are appended with the storage array-union primitive.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import unicodedata
import uuid

from .amortization import PaymentFrequency, as_date, compute_schedule
from .audit import AuditEventType, AuditTrail
from .errors import NotFoundError, ValidationError
from .identity import Identity
from .logging_config import get_logger, log_action
from .money import Amount, money_str, require_positive, round_money, to_decimal
from .storage import StorageInterface


logger = get_logger("microcredit.loans")


def normalize_label(value: Any) -> str:
    """Trim, uppercase, strip accents and unify separators for status matching"""
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.replace("_", " ").upper().split())


class LoanStatus(Enum):
    """Loan lifecycle states"""
    SOLICITADO = "SOLICITADO"
    EN_REVISION = "EN_REVISION"
    APROBADO = "APROBADO"
    RECHAZADO = "RECHAZADO"
    DESEMBOLSADO = "DESEMBOLSADO"
    COMPLETADO = "COMPLETADO"

    @classmethod
    def parse(cls, value) -> 'LoanStatus':
        if isinstance(value, cls):
            return value
        wanted = normalize_label(value)
        for member in cls:
            if normalize_label(member.value) == wanted:
                return member
        raise ValidationError(f"Unknown loan status: {value!r}")


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    POR_VENCER = "POR VENCER"            # pending, not yet due
    VENCIDO = "VENCIDO"                  # overdue
    EN_VERIFICACION = "EN VERIFICACIÓN"  # reported by client, awaiting admin
    PAGADO = "PAGADO"                    # approved; terminal

    @classmethod
    def parse(cls, value) -> 'InstallmentStatus':
        if isinstance(value, cls):
            return value
        wanted = normalize_label(value)
        for member in cls:
            if normalize_label(member.value) == wanted:
                return member
        raise ValidationError(f"Unknown installment status: {value!r}")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class StatusChange:
    """One entry of a loan's append-only status history"""
    status: LoanStatus
    date: datetime
    updated_by: str  # "sistema" or an admin uid
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "date": self.date.isoformat(),
            "updatedBy": self.updated_by,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusChange':
        return cls(
            status=LoanStatus.parse(data["status"]),
            date=datetime.fromisoformat(data["date"]),
            updated_by=data.get("updatedBy", ""),
            notes=data.get("notes") or "",
        )


@dataclass
class Installment:
    """One scheduled payment obligation within a loan"""
    installment_number: int
    due_date: date
    amount: Decimal
    status: InstallmentStatus = InstallmentStatus.POR_VENCER
    payment_date: Optional[datetime] = None
    payment_report_date: Optional[datetime] = None
    payment_report_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    receipt_url: Optional[str] = None
    rejection_date: Optional[datetime] = None

    def is_overdue(self, today: date) -> bool:
        return self.status != InstallmentStatus.PAGADO and self.due_date < today

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installmentNumber": self.installment_number,
            "dueDate": self.due_date.isoformat(),
            "amount": money_str(self.amount),
            "status": self.status.value,
            "paymentDate": _iso(self.payment_date),
            "paymentReportDate": _iso(self.payment_report_date),
            "paymentReportNotes": self.payment_report_notes,
            "adminNotes": self.admin_notes,
            "receiptUrl": self.receipt_url,
            "rejectionDate": _iso(self.rejection_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            installment_number=int(data["installmentNumber"]),
            due_date=date.fromisoformat(str(data["dueDate"])[:10]),
            amount=to_decimal(data["amount"]),
            status=InstallmentStatus.parse(data.get("status")),
            payment_date=_dt(data.get("paymentDate")),
            payment_report_date=_dt(data.get("paymentReportDate")),
            payment_report_notes=data.get("paymentReportNotes"),
            admin_notes=data.get("adminNotes"),
            receipt_url=data.get("receiptUrl"),
            rejection_date=_dt(data.get("rejectionDate")),
        )


@dataclass
class Loan:
    """Loan document; exclusively owns its installment sequence"""
    id: str
    user_id: str
    loan_amount: Decimal
    term_value: int
    payment_frequency: PaymentFrequency
    application_date: datetime
    status: LoanStatus
    interest_rate: Optional[Decimal] = None  # annual %, optional
    disbursement_date: Optional[date] = None
    user_name: str = ""
    user_email: str = ""
    currency: str = "USD"
    status_history: List[StatusChange] = field(default_factory=list)
    installments: List[Installment] = field(default_factory=list)

    @property
    def is_fully_paid(self) -> bool:
        return bool(self.installments) and all(
            inst.status == InstallmentStatus.PAGADO for inst in self.installments
        )

    def find_installment(self, installment_number: int) -> Installment:
        for inst in self.installments:
            if inst.installment_number == installment_number:
                return inst
        raise NotFoundError(f"Installment {installment_number} not found in loan {self.id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "loanAmount": money_str(self.loan_amount),
            "currency": self.currency,
            "interestRate": str(self.interest_rate) if self.interest_rate is not None else None,
            "termValue": self.term_value,
            "paymentFrequency": self.payment_frequency.value,
            "applicationDate": self.application_date.isoformat(),
            "disbursementDate": _iso(self.disbursement_date),
            "status": self.status.value,
            "statusHistory": [entry.to_dict() for entry in self.status_history],
            "installments": [inst.to_dict() for inst in self.installments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        rate = data.get("interestRate")
        disbursed = data.get("disbursementDate")
        return cls(
            id=data["id"],
            user_id=data["userId"],
            user_name=data.get("userName") or "",
            user_email=data.get("userEmail") or "",
            loan_amount=to_decimal(data["loanAmount"]),
            currency=data.get("currency") or "USD",
            interest_rate=to_decimal(rate) if rate is not None else None,
            term_value=int(data["termValue"]),
            payment_frequency=PaymentFrequency.parse(data["paymentFrequency"]),
            application_date=datetime.fromisoformat(data["applicationDate"]),
            disbursement_date=date.fromisoformat(disbursed[:10]) if disbursed else None,
            status=LoanStatus.parse(data["status"]),
            status_history=[StatusChange.from_dict(h) for h in data.get("statusHistory") or []],
            installments=sorted(
                (Installment.from_dict(i) for i in data.get("installments") or []),
                key=lambda inst: inst.installment_number
            ),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanManager:
    """
    Installment ledger: owns loan creation and every installment transition
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or _utcnow

        self.loans_table = "loans"

    # --- creation and queries ---------------------------------------------

    def create_loan(
        self,
        user_id: str,
        loan_amount: Amount,
        term_value: int,
        payment_frequency,
        disbursement_date,
        identity: Identity,
        interest_rate: Optional[Amount] = None,
        user_name: str = "",
        user_email: str = "",
        currency: str = "USD",
        status: LoanStatus = LoanStatus.DESEMBOLSADO,
        notes: str = "Préstamo creado"
    ) -> Loan:
        """
        Create a loan and its installment schedule

        Args:
            user_id: Borrower client ID
            loan_amount: Principal
            term_value: Number of installments
            payment_frequency: Mensual, Quincenal or Semanal
            disbursement_date: Schedule anchor; first installment is one period later
            identity: Admin creating the loan
            interest_rate: Annual rate in percent, optional

        Returns:
            Created Loan
        """
        if not user_id:
            raise ValidationError("Client ID is required")
        amount = require_positive(loan_amount, "loan amount")

        schedule = compute_schedule(
            principal=amount,
            annual_rate_percent=interest_rate,
            period_count=term_value,
            frequency=payment_frequency,
            start_date=disbursement_date
        )

        now = self.clock()
        status = LoanStatus.parse(status)
        loan = Loan(
            id=str(uuid.uuid4()),
            user_id=user_id,
            user_name=user_name,
            user_email=user_email,
            loan_amount=amount,
            currency=currency,
            interest_rate=to_decimal(interest_rate) if interest_rate is not None else None,
            term_value=term_value,
            payment_frequency=PaymentFrequency.parse(payment_frequency),
            application_date=now,
            disbursement_date=as_date(disbursement_date),
            status=status,
            status_history=[StatusChange(status, now, identity.uid, notes)],
            installments=[
                Installment(
                    installment_number=row.installment_number,
                    due_date=row.due_date,
                    amount=row.amount
                )
                for row in schedule.installments
            ]
        )

        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=identity.uid,
            metadata={
                "user_id": user_id,
                "loan_amount": money_str(amount),
                "interest_rate": loan.interest_rate,
                "term_value": term_value,
                "payment_frequency": loan.payment_frequency.value,
                "periodic_payment": schedule.periodic_payment,
                "total_interest": schedule.total_interest,
            }
        )
        log_action(logger, "info", f"Loan created with {term_value} installments",
                   user_id=identity.uid, action="loan_created", resource=f"loan:{loan.id}")

        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get a loan; raises NotFoundError when absent"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def get_installment(self, loan_id: str, installment_number: int) -> Installment:
        return self.get_loan(loan_id).find_installment(installment_number)

    def get_loans_for_client(self, user_id: str) -> List[Loan]:
        """Client portal view, newest application first"""
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, {"userId": user_id})]
        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        return loans

    def get_all_loans(self) -> List[Loan]:
        """Admin view across every client, newest application first"""
        loans = [Loan.from_dict(d) for d in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        return loans

    # --- loan status ------------------------------------------------------

    def update_loan_status(
        self,
        loan_id: str,
        new_status,
        identity: Identity,
        notes: str = ""
    ) -> Loan:
        """Change the loan status and append a history entry"""
        loan = self.get_loan(loan_id)
        new_status = LoanStatus.parse(new_status)
        now = self.clock()

        old_status = loan.status
        loan.status = new_status
        if new_status == LoanStatus.DESEMBOLSADO:
            loan.disbursement_date = now.date()
        self._save_loan(loan)
        self._append_history(loan, StatusChange(new_status, now, identity.uid, notes))

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=identity.uid,
            metadata={"from": old_status.value, "to": new_status.value, "notes": notes}
        )
        log_action(logger, "info", f"Loan status {old_status.value} -> {new_status.value}",
                   user_id=identity.uid, action="loan_status_changed", resource=f"loan:{loan.id}")
        return loan

    # --- installment lifecycle --------------------------------------------

    def report_payment(
        self,
        loan_id: str,
        installment_number: int,
        notes: str,
        identity: Identity,
        receipt_url: Optional[str] = None
    ) -> Installment:
        """
        Client reports a payment: the installment moves to EN VERIFICACIÓN.

        Re-reporting while already in verification overwrites the notes.
        """
        loan = self.get_loan(loan_id)
        inst = loan.find_installment(installment_number)
        if inst.status == InstallmentStatus.PAGADO:
            raise ValidationError(f"Installment {installment_number} is already paid")

        inst.status = InstallmentStatus.EN_VERIFICACION
        inst.payment_report_date = self.clock()
        inst.payment_report_notes = notes or ""
        inst.admin_notes = ""
        if receipt_url:
            inst.receipt_url = receipt_url
        self._save_loan(loan)

        self._audit_installment(AuditEventType.INSTALLMENT_REPORTED, loan, inst, identity,
                                {"notes": notes, "receipt_url": receipt_url})
        log_action(logger, "info", f"Payment reported for installment {installment_number}",
                   user_id=identity.uid, action="installment_reported", resource=f"loan:{loan.id}")
        return inst

    def approve_installment(
        self,
        loan_id: str,
        installment_number: int,
        identity: Identity,
        admin_notes: str = ""
    ) -> Loan:
        """
        Admin approves an installment (EN VERIFICACIÓN -> PAGADO).

        Other non-paid states are tolerated for manual correction. When the
        approval leaves every installment PAGADO the loan itself becomes
        COMPLETADO.
        """
        loan = self.get_loan(loan_id)
        inst = loan.find_installment(installment_number)
        if inst.status == InstallmentStatus.PAGADO:
            return loan

        now = self.clock()
        inst.status = InstallmentStatus.PAGADO
        if inst.payment_date is None:
            inst.payment_date = now
        inst.admin_notes = admin_notes or ""
        self._save_loan(loan)

        self._audit_installment(AuditEventType.INSTALLMENT_APPROVED, loan, inst, identity,
                                {"amount": inst.amount})
        log_action(logger, "info", f"Installment {installment_number} approved",
                   user_id=identity.uid, action="installment_approved", resource=f"loan:{loan.id}")

        if loan.is_fully_paid and loan.status != LoanStatus.COMPLETADO:
            self._complete_loan(loan, identity, now)

        return loan

    def reject_installment(
        self,
        loan_id: str,
        installment_number: int,
        reason: str,
        identity: Identity
    ) -> Installment:
        """
        Admin rejects a reported payment, reopening the installment.

        The installment returns to VENCIDO if its due date has passed at the
        time of rejection, otherwise to POR VENCER.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        loan = self.get_loan(loan_id)
        inst = loan.find_installment(installment_number)
        if inst.status != InstallmentStatus.EN_VERIFICACION:
            raise ValidationError(
                f"Installment {installment_number} is {inst.status.value}, not awaiting verification"
            )

        now = self.clock()
        is_overdue = inst.due_date < now.date()
        inst.status = InstallmentStatus.VENCIDO if is_overdue else InstallmentStatus.POR_VENCER
        inst.payment_report_date = None
        inst.payment_report_notes = None
        inst.receipt_url = None
        inst.admin_notes = reason.strip()
        inst.rejection_date = now
        self._save_loan(loan)

        self._audit_installment(AuditEventType.INSTALLMENT_REJECTED, loan, inst, identity,
                                {"reason": inst.admin_notes, "reopened_as": inst.status.value})
        log_action(logger, "info", f"Installment {installment_number} rejected",
                   user_id=identity.uid, action="installment_rejected", resource=f"loan:{loan.id}")
        return inst

    # --- schedule corrections ---------------------------------------------

    def insert_installment(
        self,
        loan_id: str,
        installment_number: int,
        due_date: date,
        amount: Amount,
        identity: Identity,
        notes: str = ""
    ) -> Loan:
        """Insert an installment, shifting numbers >= installment_number up by one"""
        loan = self.get_loan(loan_id)
        count = len(loan.installments)
        if not 1 <= installment_number <= count + 1:
            raise ValidationError(f"Installment number must be between 1 and {count + 1}")
        value = require_positive(amount, "installment amount")

        for inst in loan.installments:
            if inst.installment_number >= installment_number:
                inst.installment_number += 1

        today = self.clock().date()
        loan.installments.append(Installment(
            installment_number=installment_number,
            due_date=due_date,
            amount=round_money(value),
            status=InstallmentStatus.VENCIDO if due_date < today else InstallmentStatus.POR_VENCER
        ))
        self._renumber(loan)

        return self._record_correction(
            loan, identity, AuditEventType.INSTALLMENT_INSERTED,
            f"Cuota {installment_number} insertada manualmente. {notes}".strip(),
            {"installment_number": installment_number, "amount": money_str(value),
             "due_date": due_date}
        )

    def update_installment(
        self,
        loan_id: str,
        installment_number: int,
        identity: Identity,
        due_date: Optional[date] = None,
        amount: Optional[Amount] = None,
        status=None,
        admin_notes: Optional[str] = None
    ) -> Loan:
        """Edit an installment's due date, amount, status or notes"""
        loan = self.get_loan(loan_id)
        inst = loan.find_installment(installment_number)
        changes: Dict[str, Any] = {}

        if due_date is not None:
            inst.due_date = due_date
            changes["due_date"] = due_date
        if amount is not None:
            inst.amount = round_money(require_positive(amount, "installment amount"))
            changes["amount"] = money_str(inst.amount)
        if status is not None:
            target = InstallmentStatus.parse(status)
            if target == InstallmentStatus.EN_VERIFICACION:
                raise ValidationError("Only a client payment report moves an installment to verification")
            if inst.status == InstallmentStatus.PAGADO and target != InstallmentStatus.PAGADO:
                raise ValidationError(f"Installment {installment_number} is already paid")
            inst.status = target
            if inst.status == InstallmentStatus.PAGADO and inst.payment_date is None:
                inst.payment_date = self.clock()
            changes["status"] = inst.status.value
        if admin_notes is not None:
            inst.admin_notes = admin_notes
            changes["admin_notes"] = admin_notes
        if not changes:
            raise ValidationError("No installment fields to update")

        self._renumber(loan)
        return self._record_correction(
            loan, identity, AuditEventType.INSTALLMENT_UPDATED,
            f"Cuota {installment_number} modificada manualmente",
            dict(changes, installment_number=installment_number)
        )

    def remove_installment(
        self,
        loan_id: str,
        installment_number: int,
        identity: Identity,
        notes: str = ""
    ) -> Loan:
        """Remove an installment, shifting later numbers down by one"""
        loan = self.get_loan(loan_id)
        removed = loan.find_installment(installment_number)
        if len(loan.installments) == 1:
            raise ValidationError("Cannot remove the only installment of a loan")

        loan.installments.remove(removed)
        for inst in loan.installments:
            if inst.installment_number > installment_number:
                inst.installment_number -= 1
        self._renumber(loan)

        return self._record_correction(
            loan, identity, AuditEventType.INSTALLMENT_REMOVED,
            f"Cuota {installment_number} eliminada manualmente. {notes}".strip(),
            {"installment_number": installment_number, "amount": money_str(removed.amount)}
        )

    # --- daily checks -----------------------------------------------------

    def refresh_overdue_statuses(self, identity: Identity) -> int:
        """
        Mark every POR VENCER installment whose due date has passed as VENCIDO.

        Returns:
            Number of installments updated
        """
        today = self.clock().date()
        updated = 0
        for loan in self.get_all_loans():
            changed = [
                inst for inst in loan.installments
                if inst.status == InstallmentStatus.POR_VENCER and inst.due_date < today
            ]
            if not changed:
                continue
            for inst in changed:
                inst.status = InstallmentStatus.VENCIDO
            self._save_loan(loan)
            updated += len(changed)
            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENTS_MARKED_OVERDUE,
                entity_type="loan",
                entity_id=loan.id,
                user_id=identity.uid,
                metadata={"installments": [inst.installment_number for inst in changed]}
            )

        log_action(logger, "info", f"Daily check marked {updated} installments as overdue",
                   user_id=identity.uid, action="overdue_refresh")
        return updated

    def get_installments_due_soon(self, days: int = 3) -> List[Tuple[Loan, Installment]]:
        """Unpaid, unreported installments falling due within the next ``days`` days"""
        today = self.clock().date()
        horizon = today + timedelta(days=days)
        result = []
        for loan in self.get_all_loans():
            for inst in loan.installments:
                if inst.status == InstallmentStatus.POR_VENCER and today <= inst.due_date <= horizon:
                    result.append((loan, inst))
        result.sort(key=lambda pair: pair[1].due_date)
        return result

    # --- helpers ----------------------------------------------------------

    def _renumber(self, loan: Loan) -> None:
        """Keep installment numbers contiguous 1..N in due order of number"""
        loan.installments.sort(key=lambda inst: inst.installment_number)
        for position, inst in enumerate(loan.installments, start=1):
            inst.installment_number = position

    def _complete_loan(self, loan: Loan, identity: Identity, now: datetime) -> None:
        loan.status = LoanStatus.COMPLETADO
        self._save_loan(loan)
        self._append_history(loan, StatusChange(
            LoanStatus.COMPLETADO, now, identity.uid,
            "Préstamo completado: todas las cuotas pagadas"
        ))
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_COMPLETED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=identity.uid,
            metadata={"installments": len(loan.installments)}
        )
        log_action(logger, "info", "Loan completed, every installment paid",
                   user_id=identity.uid, action="loan_completed", resource=f"loan:{loan.id}")

    def _record_correction(
        self,
        loan: Loan,
        identity: Identity,
        event_type: AuditEventType,
        note: str,
        metadata: Dict[str, Any]
    ) -> Loan:
        self._save_loan(loan)
        self._append_history(loan, StatusChange(loan.status, self.clock(), identity.uid, note))
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            user_id=identity.uid,
            metadata=metadata
        )
        log_action(logger, "info", note, user_id=identity.uid,
                   action=event_type.value, resource=f"loan:{loan.id}")

        # A corrected schedule can finish a loan or reopen a finished one
        if loan.is_fully_paid and loan.status != LoanStatus.COMPLETADO:
            self._complete_loan(loan, identity, self.clock())
        elif not loan.is_fully_paid and loan.status == LoanStatus.COMPLETADO:
            self._reopen_loan(loan, identity)
        return loan

    def _reopen_loan(self, loan: Loan, identity: Identity) -> None:
        loan.status = LoanStatus.DESEMBOLSADO
        self._save_loan(loan)
        self._append_history(loan, StatusChange(
            LoanStatus.DESEMBOLSADO, self.clock(), identity.uid,
            "Préstamo reabierto: cuotas pendientes tras corrección"
        ))
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=identity.uid,
            metadata={"from": LoanStatus.COMPLETADO.value, "to": LoanStatus.DESEMBOLSADO.value}
        )
        log_action(logger, "info", "Loan reopened by a schedule correction",
                   user_id=identity.uid, action="loan_reopened", resource=f"loan:{loan.id}")

    def _audit_installment(
        self,
        event_type: AuditEventType,
        loan: Loan,
        inst: Installment,
        identity: Identity,
        metadata: Dict[str, Any]
    ) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="installment",
            entity_id=f"{loan.id}:{inst.installment_number}",
            user_id=identity.uid,
            metadata=dict(metadata, status=inst.status.value)
        )

    def _append_history(self, loan: Loan, entry: StatusChange) -> None:
        self.storage.array_union(self.loans_table, loan.id, "statusHistory", [entry.to_dict()])
        loan.status_history.append(entry)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
