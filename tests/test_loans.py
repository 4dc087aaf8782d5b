"""
Test suite for loans module

Tests loan creation from a schedule, the installment state machine
(report, approve, reject), overdue derivation, schedule corrections and
loan auto-completion.
"""

import pytest
from decimal import Decimal
from datetime import date

from microcredit.storage import InMemoryStorage
from microcredit.audit import AuditTrail, AuditEventType
from microcredit.errors import NotFoundError, ValidationError
from microcredit.identity import Identity, UserRole
from microcredit.loans import (
    LoanManager, LoanStatus, InstallmentStatus, normalize_label
)


ADMIN = Identity(uid="admin-1", email="admin@example.com", role=UserRole.ADMIN)
CLIENT = Identity(uid="client-1", email="client@example.com")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def loan_manager(storage, audit_trail, clock):
    return LoanManager(storage, audit_trail, clock=clock)


@pytest.fixture
def loan(loan_manager):
    """1200 at 0% over 12 monthly installments of 100, disbursed 2024-01-01"""
    return loan_manager.create_loan(
        user_id=CLIENT.uid,
        loan_amount=Decimal('1200'),
        term_value=12,
        payment_frequency="Mensual",
        disbursement_date=date(2024, 1, 1),
        identity=ADMIN,
        interest_rate=Decimal('0'),
        user_name="Maria Perez",
        user_email=CLIENT.email
    )


def numbers(loan):
    return [inst.installment_number for inst in loan.installments]


class TestStatusParsing:
    """Status labels are compared after normalization"""

    def test_normalize_label(self):
        assert normalize_label(" en verificación ") == "EN VERIFICACION"
        assert normalize_label("EN_VERIFICACION") == "EN VERIFICACION"

    def test_installment_status_parse(self):
        assert InstallmentStatus.parse("en verificacion") == InstallmentStatus.EN_VERIFICACION
        assert InstallmentStatus.parse("Por  Vencer") == InstallmentStatus.POR_VENCER
        with pytest.raises(ValidationError):
            InstallmentStatus.parse("EN ESPERA")

    def test_loan_status_parse(self):
        assert LoanStatus.parse("en revision") == LoanStatus.EN_REVISION
        assert LoanStatus.parse("COMPLETADO") == LoanStatus.COMPLETADO


class TestLoanCreation:
    """Test loan creation and queries"""

    def test_create_loan_builds_schedule(self, loan, loan_manager):
        assert loan.status == LoanStatus.DESEMBOLSADO
        assert loan.disbursement_date == date(2024, 1, 1)
        assert numbers(loan) == list(range(1, 13))
        assert all(inst.amount == Decimal('100.00') for inst in loan.installments)
        assert all(inst.status == InstallmentStatus.POR_VENCER for inst in loan.installments)
        assert loan.installments[0].due_date == date(2024, 2, 1)
        assert loan.status_history[0].updated_by == ADMIN.uid

        stored = loan_manager.get_loan(loan.id)
        assert stored.to_dict() == loan.to_dict()

    def test_create_loan_with_interest(self, loan_manager):
        loan = loan_manager.create_loan(
            user_id="client-2", loan_amount="1000", term_value=12, payment_frequency="Mensual",
            disbursement_date=date(2024, 1, 1), identity=ADMIN, interest_rate="12"
        )
        total = sum(inst.amount for inst in loan.installments)
        assert total == Decimal('1066.19')
        assert loan.interest_rate == Decimal('12')

    def test_create_loan_validation(self, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.create_loan("c", "0", 12, "Mensual", date(2024, 1, 1), ADMIN)
        with pytest.raises(ValidationError):
            loan_manager.create_loan("c", "100", 0, "Mensual", date(2024, 1, 1), ADMIN)
        with pytest.raises(ValidationError):
            loan_manager.create_loan("c", "100", 12, "Mensual", date(2024, 1, 1), ADMIN, interest_rate="-1")
        with pytest.raises(ValidationError):
            loan_manager.create_loan("", "100", 12, "Mensual", date(2024, 1, 1), ADMIN)

    def test_create_loan_is_audited(self, loan, audit_trail):
        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED
        assert events[0].user_id == ADMIN.uid

    def test_queries(self, loan, loan_manager, clock):
        clock.advance(days=1)
        newer = loan_manager.create_loan(CLIENT.uid, "500", 5, "Semanal", date(2024, 6, 1), ADMIN)
        loan_manager.create_loan("client-2", "500", 5, "Semanal", date(2024, 6, 1), ADMIN)

        mine = loan_manager.get_loans_for_client(CLIENT.uid)
        assert [l.id for l in mine] == [newer.id, loan.id]
        assert len(loan_manager.get_all_loans()) == 3

        with pytest.raises(NotFoundError):
            loan_manager.get_loan("missing")
        with pytest.raises(NotFoundError):
            loan_manager.get_installment(loan.id, 13)

    def test_update_loan_status_appends_history(self, loan_manager, clock):
        loan = loan_manager.create_loan(
            CLIENT.uid, "1000", 10, "Mensual", date(2024, 1, 1), ADMIN, status=LoanStatus.APROBADO
        )
        updated = loan_manager.update_loan_status(loan.id, "DESEMBOLSADO", ADMIN, notes="Transferido")

        assert updated.status == LoanStatus.DESEMBOLSADO
        assert updated.disbursement_date == clock().date()
        stored = loan_manager.get_loan(loan.id)
        assert [h.status for h in stored.status_history] == [LoanStatus.APROBADO, LoanStatus.DESEMBOLSADO]
        assert stored.status_history[-1].notes == "Transferido"


class TestInstallmentLifecycle:
    """Test report, approve and reject transitions"""

    def test_report_payment(self, loan, loan_manager, clock):
        inst = loan_manager.report_payment(loan.id, 8, "Transferencia #123", CLIENT, receipt_url="https://files/r.png")

        assert inst.status == InstallmentStatus.EN_VERIFICACION
        assert inst.payment_report_date == clock()
        assert inst.payment_report_notes == "Transferencia #123"
        assert inst.receipt_url == "https://files/r.png"
        assert loan_manager.get_installment(loan.id, 8).status == InstallmentStatus.EN_VERIFICACION

    def test_re_report_overwrites_notes(self, loan, loan_manager):
        loan_manager.report_payment(loan.id, 8, "first", CLIENT)
        inst = loan_manager.report_payment(loan.id, 8, "second", CLIENT)
        assert inst.payment_report_notes == "second"
        assert inst.status == InstallmentStatus.EN_VERIFICACION

    def test_report_missing_installment(self, loan, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.report_payment(loan.id, 99, "x", CLIENT)
        with pytest.raises(NotFoundError):
            loan_manager.report_payment("missing", 1, "x", CLIENT)

    def test_report_paid_installment_fails(self, loan, loan_manager):
        loan_manager.approve_installment(loan.id, 1, ADMIN)
        with pytest.raises(ValidationError):
            loan_manager.report_payment(loan.id, 1, "again", CLIENT)

    def test_report_clears_previous_admin_notes(self, loan, loan_manager):
        loan_manager.report_payment(loan.id, 8, "first", CLIENT)
        loan_manager.reject_installment(loan.id, 8, "Comprobante ilegible", ADMIN)
        inst = loan_manager.report_payment(loan.id, 8, "second", CLIENT)
        assert inst.admin_notes == ""

    def test_approve_stamps_payment_date(self, loan, loan_manager, clock):
        loan_manager.report_payment(loan.id, 8, "pagado", CLIENT)
        clock.advance(hours=2)
        updated = loan_manager.approve_installment(loan.id, 8, ADMIN, admin_notes="OK")

        inst = updated.find_installment(8)
        assert inst.status == InstallmentStatus.PAGADO
        assert inst.payment_date == clock()
        assert inst.admin_notes == "OK"

    def test_approve_preserves_existing_payment_date(self, loan, loan_manager, storage):
        data = storage.load("loans", loan.id)
        data["installments"][2]["paymentDate"] = "2024-04-01T10:00:00+00:00"
        storage.save("loans", loan.id, data)

        updated = loan_manager.approve_installment(loan.id, 3, ADMIN)
        assert updated.find_installment(3).payment_date.isoformat() == "2024-04-01T10:00:00+00:00"

    def test_approve_already_paid_is_noop(self, loan, loan_manager, audit_trail):
        loan_manager.approve_installment(loan.id, 1, ADMIN)
        count = audit_trail.count_events()
        loan_manager.approve_installment(loan.id, 1, ADMIN)
        assert audit_trail.count_events() == count

    def test_reject_requires_reason(self, loan, loan_manager):
        loan_manager.report_payment(loan.id, 8, "pagado", CLIENT)
        with pytest.raises(ValidationError):
            loan_manager.reject_installment(loan.id, 8, "  ", ADMIN)
        assert loan_manager.get_installment(loan.id, 8).status == InstallmentStatus.EN_VERIFICACION

    def test_reject_requires_verification_state(self, loan, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.reject_installment(loan.id, 8, "no report", ADMIN)

    def test_reject_future_installment_reopens_as_pending(self, loan, loan_manager, clock):
        loan_manager.report_payment(loan.id, 8, "pagado", CLIENT, receipt_url="https://files/r.png")
        inst = loan_manager.reject_installment(loan.id, 8, "Monto incorrecto", ADMIN)

        assert inst.due_date == date(2024, 9, 1)
        assert inst.status == InstallmentStatus.POR_VENCER
        assert inst.payment_report_date is None
        assert inst.payment_report_notes is None
        assert inst.receipt_url is None
        assert inst.admin_notes == "Monto incorrecto"
        assert inst.rejection_date == clock()

    def test_reject_past_due_installment_reopens_as_overdue(self, loan, loan_manager):
        loan_manager.report_payment(loan.id, 2, "pagado", CLIENT)
        inst = loan_manager.reject_installment(loan.id, 2, "No se recibió", ADMIN)

        assert inst.due_date == date(2024, 3, 1)
        assert inst.status == InstallmentStatus.VENCIDO


class TestLoanCompletion:
    """Approving the last open installment completes the loan"""

    def test_auto_completion(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "200", 2, "Mensual", date(2024, 5, 1), ADMIN)

        loan_manager.report_payment(loan.id, 1, "cuota 1", CLIENT)
        after_first = loan_manager.approve_installment(loan.id, 1, ADMIN)
        assert after_first.status == LoanStatus.DESEMBOLSADO

        loan_manager.report_payment(loan.id, 2, "cuota 2", CLIENT)
        after_last = loan_manager.approve_installment(loan.id, 2, ADMIN)
        assert after_last.status == LoanStatus.COMPLETADO

        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETADO
        assert stored.status_history[-1].status == LoanStatus.COMPLETADO

    def test_completion_is_audited(self, loan_manager, audit_trail):
        loan = loan_manager.create_loan(CLIENT.uid, "100", 1, "Mensual", date(2024, 5, 1), ADMIN)
        loan_manager.approve_installment(loan.id, 1, ADMIN)

        types = [e.event_type for e in audit_trail.get_events_for_entity("loan", loan.id)]
        assert AuditEventType.LOAN_COMPLETED in types


class TestScheduleCorrections:
    """Insert, update and remove keep numbering contiguous"""

    def test_insert_shifts_later_installments(self, loan, loan_manager):
        updated = loan_manager.insert_installment(
            loan.id, 3, date(2024, 3, 15), "50", ADMIN, notes="Cuota extraordinaria"
        )

        assert numbers(updated) == list(range(1, 14))
        inserted = updated.find_installment(3)
        assert inserted.amount == Decimal('50.00')
        assert inserted.due_date == date(2024, 3, 15)
        assert inserted.status == InstallmentStatus.VENCIDO
        assert updated.find_installment(4).due_date == date(2024, 4, 1)
        assert "insertada" in updated.status_history[-1].notes

    def test_insert_at_end(self, loan, loan_manager):
        updated = loan_manager.insert_installment(loan.id, 13, date(2025, 2, 1), "100", ADMIN)
        assert numbers(updated) == list(range(1, 14))
        assert updated.find_installment(13).status == InstallmentStatus.POR_VENCER

    def test_insert_out_of_range(self, loan, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.insert_installment(loan.id, 14, date(2025, 2, 1), "100", ADMIN)
        with pytest.raises(ValidationError):
            loan_manager.insert_installment(loan.id, 0, date(2025, 2, 1), "100", ADMIN)

    def test_remove_shifts_down(self, loan, loan_manager):
        updated = loan_manager.remove_installment(loan.id, 5, ADMIN)

        assert numbers(updated) == list(range(1, 12))
        assert updated.find_installment(5).due_date == date(2024, 7, 1)
        assert "eliminada" in updated.status_history[-1].notes

    def test_remove_only_installment_fails(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "100", 1, "Mensual", date(2024, 5, 1), ADMIN)
        with pytest.raises(ValidationError):
            loan_manager.remove_installment(loan.id, 1, ADMIN)

    def test_numbering_stays_contiguous(self, loan, loan_manager):
        loan_manager.insert_installment(loan.id, 1, date(2024, 1, 15), "10", ADMIN)
        loan_manager.remove_installment(loan.id, 7, ADMIN)
        loan_manager.insert_installment(loan.id, 12, date(2024, 12, 15), "10", ADMIN)
        loan_manager.remove_installment(loan.id, 1, ADMIN)
        loan_manager.remove_installment(loan.id, 12, ADMIN)

        stored = loan_manager.get_loan(loan.id)
        assert numbers(stored) == list(range(1, len(stored.installments) + 1))
        assert len(stored.installments) == 11

    def test_update_installment(self, loan, loan_manager):
        updated = loan_manager.update_installment(
            loan.id, 10, ADMIN, due_date=date(2024, 11, 15), amount="120", admin_notes="Reprogramada"
        )
        inst = updated.find_installment(10)
        assert inst.due_date == date(2024, 11, 15)
        assert inst.amount == Decimal('120.00')
        assert inst.admin_notes == "Reprogramada"
        assert "modificada" in updated.status_history[-1].notes

    def test_update_installment_requires_changes(self, loan, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.update_installment(loan.id, 10, ADMIN)

    def test_update_status_to_paid_can_complete_loan(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "100", 1, "Mensual", date(2024, 5, 1), ADMIN)
        updated = loan_manager.update_installment(loan.id, 1, ADMIN, status="PAGADO")
        assert updated.status == LoanStatus.COMPLETADO
        assert updated.find_installment(1).payment_date is not None

    def test_update_cannot_set_verification(self, loan, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.update_installment(loan.id, 10, ADMIN, status="EN VERIFICACIÓN")
        assert loan_manager.get_loan(loan.id).find_installment(10).status == InstallmentStatus.POR_VENCER

    def test_update_cannot_reopen_paid_installment(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "200", 2, "Mensual", date(2024, 5, 1), ADMIN)
        loan_manager.approve_installment(loan.id, 1, ADMIN)
        loan_manager.approve_installment(loan.id, 2, ADMIN)

        with pytest.raises(ValidationError):
            loan_manager.update_installment(loan.id, 2, ADMIN, status="POR VENCER")

        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETADO
        assert stored.is_fully_paid

    def test_remove_last_unpaid_completes_loan(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "300", 3, "Mensual", date(2024, 5, 1), ADMIN)
        loan_manager.approve_installment(loan.id, 1, ADMIN)
        loan_manager.approve_installment(loan.id, 2, ADMIN)

        updated = loan_manager.remove_installment(loan.id, 3, ADMIN)

        assert updated.status == LoanStatus.COMPLETADO
        assert loan_manager.get_loan(loan.id).status == LoanStatus.COMPLETADO
        assert loan_manager.get_loan(loan.id).status_history[-1].status == LoanStatus.COMPLETADO

    def test_insert_into_completed_loan_reopens_it(self, loan_manager):
        loan = loan_manager.create_loan(CLIENT.uid, "100", 1, "Mensual", date(2024, 5, 1), ADMIN)
        loan_manager.approve_installment(loan.id, 1, ADMIN)

        updated = loan_manager.insert_installment(loan.id, 2, date(2024, 8, 1), "25", ADMIN)

        assert updated.status == LoanStatus.DESEMBOLSADO
        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.DESEMBOLSADO
        assert stored.status_history[-1].status == LoanStatus.DESEMBOLSADO
        assert stored.find_installment(2).status == InstallmentStatus.POR_VENCER


class TestDailyChecks:
    """Overdue derivation and reminders"""

    def test_refresh_overdue_statuses(self, loan, loan_manager):
        loan_manager.report_payment(loan.id, 4, "pagado", CLIENT)

        updated = loan_manager.refresh_overdue_statuses(ADMIN)

        # Feb, Mar, Apr and Jun 1st are past due; May is awaiting verification
        assert updated == 4
        stored = loan_manager.get_loan(loan.id)
        statuses = [inst.status for inst in stored.installments[:6]]
        assert statuses == [
            InstallmentStatus.VENCIDO, InstallmentStatus.VENCIDO, InstallmentStatus.VENCIDO,
            InstallmentStatus.EN_VERIFICACION, InstallmentStatus.VENCIDO, InstallmentStatus.POR_VENCER
        ]
        assert loan_manager.refresh_overdue_statuses(ADMIN) == 0

    def test_installments_due_soon(self, loan_manager, clock):
        # Clock is 2024-06-15; weekly installments fall on 06-17, 06-24, ...
        loan = loan_manager.create_loan(CLIENT.uid, "400", 4, "Semanal", date(2024, 6, 10), ADMIN)

        due = loan_manager.get_installments_due_soon(3)
        assert [(l.id, i.installment_number) for l, i in due] == [(loan.id, 1)]

        assert len(loan_manager.get_installments_due_soon(10)) == 2
