"""
Loan and installment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import PortalSystem, ensure_owner_or_admin, get_current_identity, get_portal_system, require_admin
from .schemas import (
    ApproveInstallmentRequest, CreateLoanRequest, InsertInstallmentRequest,
    RejectRequest, ReportPaymentRequest, UpdateInstallmentRequest, UpdateLoanStatusRequest
)
from ..config import get_config
from ..identity import Identity
from ..loans import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Create a loan and its installment schedule"""
    kwargs = {}
    if request.status:
        kwargs["status"] = request.status
    if request.notes:
        kwargs["notes"] = request.notes

    loan = system.loan_manager.create_loan(
        user_id=request.user_id,
        loan_amount=request.loan_amount,
        term_value=request.term_value,
        payment_frequency=request.payment_frequency,
        disbursement_date=request.disbursement_date,
        identity=identity,
        interest_rate=request.interest_rate,
        user_name=request.user_name,
        user_email=request.user_email,
        currency=get_config().default_currency,
        **kwargs
    )
    return {
        "loan_id": loan.id,
        "loan": loan.to_dict(),
        "message": "Loan created successfully"
    }


@router.get("")
async def list_loans(
    user_id: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Own loans for clients; every loan (or one client's) for admins"""
    if not identity.is_admin:
        loans = system.loan_manager.get_loans_for_client(identity.uid)
    elif user_id:
        loans = system.loan_manager.get_loans_for_client(user_id)
    else:
        loans = system.loan_manager.get_all_loans()
    return {"loans": [loan.to_dict() for loan in loans]}


@router.post("/daily-check")
async def run_daily_check(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Mark passed-due installments as overdue and list upcoming reminders"""
    updated = system.loan_manager.refresh_overdue_statuses(identity)
    due_soon = system.loan_manager.get_installments_due_soon(get_config().reminder_days_before_due)
    return {
        "overdue_updated": updated,
        "reminders": [
            {
                "loan_id": loan.id,
                "user_id": loan.user_id,
                "user_email": loan.user_email,
                "installment": inst.to_dict()
            }
            for loan, inst in due_soon
        ]
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Get loan details with its installments"""
    loan = system.loan_manager.get_loan(loan_id)
    ensure_owner_or_admin(identity, loan.user_id)
    return loan.to_dict()


@router.patch("/{loan_id}/status")
async def update_loan_status(
    loan_id: str,
    request: UpdateLoanStatusRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Change the loan status"""
    loan = system.loan_manager.update_loan_status(
        loan_id, LoanStatus.parse(request.status), identity, notes=request.notes
    )
    return loan.to_dict()


@router.post("/{loan_id}/installments/{installment_number}/report")
async def report_payment(
    loan_id: str,
    installment_number: int,
    request: ReportPaymentRequest,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Client reports a payment for verification"""
    loan = system.loan_manager.get_loan(loan_id)
    ensure_owner_or_admin(identity, loan.user_id)
    installment = system.loan_manager.report_payment(
        loan_id, installment_number, request.notes, identity, receipt_url=request.receipt_url
    )
    return installment.to_dict()


@router.post("/{loan_id}/installments/{installment_number}/approve")
async def approve_installment(
    loan_id: str,
    installment_number: int,
    request: Optional[ApproveInstallmentRequest] = None,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Approve a reported payment"""
    loan = system.loan_manager.approve_installment(
        loan_id, installment_number, identity,
        admin_notes=request.admin_notes if request else ""
    )
    return {
        "installment": loan.find_installment(installment_number).to_dict(),
        "loan_status": loan.status.value
    }


@router.post("/{loan_id}/installments/{installment_number}/reject")
async def reject_installment(
    loan_id: str,
    installment_number: int,
    request: RejectRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Reject a reported payment, reopening the installment"""
    installment = system.loan_manager.reject_installment(
        loan_id, installment_number, request.reason, identity
    )
    return installment.to_dict()


@router.post("/{loan_id}/installments", status_code=status.HTTP_201_CREATED)
async def insert_installment(
    loan_id: str,
    request: InsertInstallmentRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Insert an installment into the schedule"""
    loan = system.loan_manager.insert_installment(
        loan_id, request.installment_number, request.due_date, request.amount,
        identity, notes=request.notes
    )
    return loan.to_dict()


@router.patch("/{loan_id}/installments/{installment_number}")
async def update_installment(
    loan_id: str,
    installment_number: int,
    request: UpdateInstallmentRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Correct an installment's due date, amount, status or notes"""
    loan = system.loan_manager.update_installment(
        loan_id, installment_number, identity,
        due_date=request.due_date,
        amount=request.amount,
        status=request.status,
        admin_notes=request.admin_notes
    )
    return loan.to_dict()


@router.delete("/{loan_id}/installments/{installment_number}")
async def remove_installment(
    loan_id: str,
    installment_number: int,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Remove an installment from the schedule"""
    loan = system.loan_manager.remove_installment(loan_id, installment_number, identity)
    return loan.to_dict()
