"""
Programmed savings endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import PortalSystem, ensure_owner_or_admin, get_current_identity, get_portal_system, require_admin
from .schemas import (
    AdminMovementRequest, CreateSavingsPlanRequest, DepositRequest, ProcessWithdrawalRequest,
    RejectRequest, UpdatePlanStatusRequest, WithdrawalRequest
)
from ..identity import Identity
from ..money import money_str


router = APIRouter()


@router.post("/plans", status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: CreateSavingsPlanRequest,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Open a programmed savings plan"""
    client_id = request.cliente_id or identity.uid
    ensure_owner_or_admin(identity, client_id)

    plan = system.savings_manager.create_plan(
        client_id=client_id,
        monto_meta=request.monto_meta,
        identity=identity,
        nombre_plan=request.nombre_plan,
        cliente_nombre=request.cliente_nombre,
        plazo_meses=request.plazo_meses,
        frecuencia_deposito=request.frecuencia_deposito,
        monto_deposito_sugerido=request.monto_deposito_sugerido,
        advisor_id=request.advisor_id,
        advisor_name=request.advisor_name
    )
    return {
        "numero_cartola": plan.numero_cartola,
        "plan": plan.to_dict(),
        "message": "Savings plan created successfully"
    }


@router.get("/plans")
async def list_plans(
    cliente_id: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Own plans for clients; every plan (or one client's) for admins"""
    if not identity.is_admin:
        plans = system.savings_manager.get_plans_for_client(identity.uid)
    elif cliente_id:
        plans = system.savings_manager.get_plans_for_client(cliente_id)
    else:
        plans = system.savings_manager.get_all_plans()
    return {"plans": [plan.to_dict() for plan in plans]}


@router.get("/deposits/pending")
async def list_pending_deposits(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Deposits awaiting verification across all clients"""
    return {"deposits": system.savings_manager.get_pending_deposits()}


@router.get("/plans/{client_id}/{numero_cartola}")
async def get_plan(
    client_id: str,
    numero_cartola: int,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Get a plan with its deposits and withdrawals"""
    ensure_owner_or_admin(identity, client_id)
    plan = system.savings_manager.get_plan(client_id, numero_cartola)
    return {
        "plan": plan.to_dict(),
        "progress_percent": str(plan.progress_percent),
        "deposits": [d.to_dict() for d in system.savings_manager.get_deposits(client_id, numero_cartola)],
        "withdrawals": [w.to_dict() for w in system.savings_manager.get_withdrawals(client_id, numero_cartola)],
    }


@router.patch("/plans/{client_id}/{numero_cartola}/status")
async def update_plan_status(
    client_id: str,
    numero_cartola: int,
    request: UpdatePlanStatusRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Change a plan's status"""
    plan = system.savings_manager.update_plan_status(client_id, numero_cartola, request.status, identity)
    return plan.to_dict()


@router.get("/plans/{client_id}/{numero_cartola}/reconcile")
async def reconcile_plan(
    client_id: str,
    numero_cartola: int,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Compare the stored balance with confirmed deposits minus processed withdrawals"""
    result = system.savings_manager.reconcile_balance(client_id, numero_cartola)
    return {key: (money_str(value) if key.endswith(("_balance", "_deposits", "_withdrawals")) else value)
            for key, value in result.items()}


# Deposits

@router.post("/plans/{client_id}/{numero_cartola}/deposits", status_code=status.HTTP_201_CREATED)
async def add_deposit(
    client_id: str,
    numero_cartola: int,
    request: DepositRequest,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Client submits a deposit for verification"""
    ensure_owner_or_admin(identity, client_id)
    deposit = system.savings_manager.add_deposit(
        client_id, numero_cartola, request.amount, identity,
        notes=request.notes, receipt_url=request.receipt_url
    )
    return deposit.to_dict()


@router.post("/plans/{client_id}/{numero_cartola}/deposits/manual", status_code=status.HTTP_201_CREATED)
async def add_manual_deposit(
    client_id: str,
    numero_cartola: int,
    request: AdminMovementRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Register an already confirmed deposit"""
    deposit = system.savings_manager.add_manual_deposit_by_admin(
        client_id, numero_cartola, request.amount, identity, notes=request.notes
    )
    return deposit.to_dict()


@router.post("/plans/{client_id}/{numero_cartola}/deposits/{deposit_id}/confirm")
async def confirm_deposit(
    client_id: str,
    numero_cartola: int,
    deposit_id: str,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Confirm a deposit and credit the plan balance"""
    deposit = system.savings_manager.confirm_deposit(client_id, numero_cartola, deposit_id, identity)
    plan = system.savings_manager.get_plan(client_id, numero_cartola)
    return {"deposit": deposit.to_dict(), "saldo_actual": money_str(plan.saldo_actual)}


@router.post("/plans/{client_id}/{numero_cartola}/deposits/{deposit_id}/reject")
async def reject_deposit(
    client_id: str,
    numero_cartola: int,
    deposit_id: str,
    request: RejectRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Reject a deposit with a note"""
    deposit = system.savings_manager.reject_deposit(
        client_id, numero_cartola, deposit_id, request.reason, identity
    )
    return deposit.to_dict()


@router.delete("/plans/{client_id}/{numero_cartola}/deposits/{deposit_id}")
async def delete_deposit(
    client_id: str,
    numero_cartola: int,
    deposit_id: str,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Delete a deposit, reversing it if it was confirmed"""
    system.savings_manager.delete_deposit(client_id, numero_cartola, deposit_id, identity)
    plan = system.savings_manager.get_plan(client_id, numero_cartola)
    return {"deleted": deposit_id, "saldo_actual": money_str(plan.saldo_actual)}


# Withdrawals

@router.post("/plans/{client_id}/{numero_cartola}/withdrawals", status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    client_id: str,
    numero_cartola: int,
    request: WithdrawalRequest,
    identity: Identity = Depends(get_current_identity),
    system: PortalSystem = Depends(get_portal_system)
):
    """Client requests a withdrawal"""
    ensure_owner_or_admin(identity, client_id)
    withdrawal = system.savings_manager.request_withdrawal(
        client_id, numero_cartola, request.amount, request.to_destination(), identity,
        nota_cliente=request.nota_cliente
    )
    return withdrawal.to_dict()


@router.post("/plans/{client_id}/{numero_cartola}/withdrawals/manual", status_code=status.HTTP_201_CREATED)
async def register_withdrawal(
    client_id: str,
    numero_cartola: int,
    request: AdminMovementRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Register an already processed withdrawal"""
    withdrawal = system.savings_manager.register_withdrawal_by_admin(
        client_id, numero_cartola, request.amount, identity, note=request.notes
    )
    return withdrawal.to_dict()


@router.post("/plans/{client_id}/{numero_cartola}/withdrawals/{withdrawal_id}/process")
async def process_withdrawal(
    client_id: str,
    numero_cartola: int,
    withdrawal_id: str,
    request: Optional[ProcessWithdrawalRequest] = None,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Pay out a requested withdrawal"""
    withdrawal = system.savings_manager.process_withdrawal(
        client_id, numero_cartola, withdrawal_id, identity,
        note=request.notes if request else None
    )
    plan = system.savings_manager.get_plan(client_id, numero_cartola)
    return {"withdrawal": withdrawal.to_dict(), "saldo_actual": money_str(plan.saldo_actual)}


@router.post("/plans/{client_id}/{numero_cartola}/withdrawals/{withdrawal_id}/reject")
async def reject_withdrawal(
    client_id: str,
    numero_cartola: int,
    withdrawal_id: str,
    request: RejectRequest,
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Reject a withdrawal request with a note"""
    withdrawal = system.savings_manager.reject_withdrawal(
        client_id, numero_cartola, withdrawal_id, request.reason, identity
    )
    return withdrawal.to_dict()
