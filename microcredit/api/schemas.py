"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from ..amortization import AmortizationSchedule, SimulationResult
from ..savings import AccountType, WithdrawalDestination


# Auth schemas
class LoginRequest(BaseModel):
    email: str
    password: str


# Loan schemas
class CreateLoanRequest(BaseModel):
    user_id: str
    loan_amount: str = Field(..., description="Decimal amount as string")
    term_value: int = Field(..., ge=1, description="Number of installments")
    payment_frequency: str = Field("Mensual", description="Mensual, Quincenal or Semanal")
    disbursement_date: date
    interest_rate: Optional[str] = Field(None, description="Annual rate in percent, decimal as string")
    user_name: str = ""
    user_email: str = ""
    status: Optional[str] = None
    notes: Optional[str] = None


class UpdateLoanStatusRequest(BaseModel):
    status: str
    notes: str = ""


class ReportPaymentRequest(BaseModel):
    notes: str = ""
    receipt_url: Optional[str] = None


class ApproveInstallmentRequest(BaseModel):
    admin_notes: str = ""


class RejectRequest(BaseModel):
    reason: str = Field(..., description="Mandatory rejection reason")


class InsertInstallmentRequest(BaseModel):
    installment_number: int = Field(..., ge=1)
    due_date: date
    amount: str
    notes: str = ""


class UpdateInstallmentRequest(BaseModel):
    due_date: Optional[date] = None
    amount: Optional[str] = None
    status: Optional[str] = None
    admin_notes: Optional[str] = None


# Savings schemas
class CreateSavingsPlanRequest(BaseModel):
    monto_meta: str = Field(..., description="Savings goal, decimal as string")
    cliente_id: Optional[str] = Field(None, description="Admins may open a plan for a client")
    cliente_nombre: str = ""
    nombre_plan: str = ""
    plazo_meses: Optional[int] = Field(None, ge=1)
    frecuencia_deposito: str = "Mensual"
    monto_deposito_sugerido: Optional[str] = None
    advisor_id: Optional[str] = None
    advisor_name: Optional[str] = None


class UpdatePlanStatusRequest(BaseModel):
    status: str


class DepositRequest(BaseModel):
    amount: str
    notes: str = ""
    receipt_url: Optional[str] = None


class WithdrawalRequest(BaseModel):
    amount: str
    banco_destino: str
    tipo_cuenta: str = Field("Ahorros", description="Ahorros or Corriente")
    numero_cuenta: str
    nombre_titular: str
    cedula_titular: str
    nota_cliente: str = ""

    def to_destination(self) -> WithdrawalDestination:
        return WithdrawalDestination(
            banco_destino=self.banco_destino,
            tipo_cuenta=AccountType.parse(self.tipo_cuenta),
            numero_cuenta=self.numero_cuenta,
            nombre_titular=self.nombre_titular,
            cedula_titular=self.cedula_titular
        )


class AdminMovementRequest(BaseModel):
    amount: str
    notes: Optional[str] = None


class ProcessWithdrawalRequest(BaseModel):
    notes: Optional[str] = None


# Simulator schemas
class ScheduleRequest(BaseModel):
    principal: str
    annual_rate_percent: Optional[str] = None
    period_count: int = Field(..., ge=1)
    frequency: str = "Mensual"
    start_date: date


class ScheduleRowModel(BaseModel):
    installment_number: int
    due_date: date
    amount: str
    principal: str
    interest: str
    remaining_balance: str


class ScheduleResponse(BaseModel):
    periodic_payment: str
    total_interest: str
    total_payment: str
    principal: str
    installments: List[ScheduleRowModel]

    @classmethod
    def from_schedule(cls, schedule: AmortizationSchedule) -> 'ScheduleResponse':
        return cls(
            periodic_payment=str(schedule.periodic_payment),
            total_interest=str(schedule.total_interest),
            total_payment=str(schedule.total_payment),
            principal=str(schedule.principal),
            installments=[
                ScheduleRowModel(
                    installment_number=row.installment_number,
                    due_date=row.due_date,
                    amount=str(row.amount),
                    principal=str(row.principal),
                    interest=str(row.interest),
                    remaining_balance=str(row.remaining_balance)
                )
                for row in schedule.installments
            ]
        )


class SimulationRequest(BaseModel):
    amount: str
    term_months: int
    include_insurance: bool = True


class SimulationRowModel(BaseModel):
    month: int
    payment: str
    principal: str
    interest: str
    balance: str


class SimulationResponse(BaseModel):
    amount: str
    term_months: int
    flat_rate: str
    monthly_payment: str
    total_payment: str
    total_interest: str
    total_insurance: str
    monthly_payment_with_insurance: str
    legal_fees: str
    rows: List[SimulationRowModel]

    @classmethod
    def from_result(cls, result: SimulationResult) -> 'SimulationResponse':
        return cls(
            amount=str(result.amount),
            term_months=result.term_months,
            flat_rate=str(result.flat_rate),
            monthly_payment=str(result.monthly_payment),
            total_payment=str(result.total_payment),
            total_interest=str(result.total_interest),
            total_insurance=str(result.total_insurance),
            monthly_payment_with_insurance=str(result.monthly_payment_with_insurance),
            legal_fees=str(result.legal_fees),
            rows=[
                SimulationRowModel(
                    month=row.month,
                    payment=str(row.payment),
                    principal=str(row.principal),
                    interest=str(row.interest),
                    balance=str(row.balance)
                )
                for row in result.rows
            ]
        )
