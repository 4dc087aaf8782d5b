"""
Public calculator endpoints: loan schedule preview and the promotional simulator
"""

from decimal import Decimal
from fastapi import APIRouter

from .schemas import ScheduleRequest, ScheduleResponse, SimulationRequest, SimulationResponse
from ..amortization import compute_schedule, simulate_simple_interest
from ..config import get_config


router = APIRouter()


@router.post("/schedule", response_model=ScheduleResponse)
async def preview_schedule(request: ScheduleRequest):
    """Fixed-payment amortization schedule preview"""
    schedule = compute_schedule(
        principal=request.principal,
        annual_rate_percent=request.annual_rate_percent,
        period_count=request.period_count,
        frequency=request.frequency,
        start_date=request.start_date
    )
    return ScheduleResponse.from_schedule(schedule)


@router.post("/simple-interest", response_model=SimulationResponse)
async def simulate(request: SimulationRequest):
    """Simple-interest simulation by term tier"""
    config = get_config()
    result = simulate_simple_interest(
        amount=request.amount,
        term_months=request.term_months,
        include_insurance=request.include_insurance,
        min_amount=Decimal(config.simulator_min_amount),
        max_amount=Decimal(config.simulator_max_amount),
        insurance_fee=Decimal(config.simulator_insurance_fee),
        legal_fee_rate=Decimal(config.simulator_legal_fee_rate)
    )
    return SimulationResponse.from_result(result)
