"""
Reporting endpoints (admin dashboards)
"""

import json
from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from .auth import PortalSystem, get_portal_system, require_admin
from ..config import get_config
from ..identity import Identity
from ..reporting import ReportFormat, ReportResult


router = APIRouter()


def _as_json(system: PortalSystem, result: ReportResult) -> dict:
    # Decimals travel as strings
    return json.loads(system.reporting_engine.export_report(result, ReportFormat.JSON))


@router.get("/portfolio")
async def portfolio_overview(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Loan portfolio totals"""
    return _as_json(system, system.reporting_engine.portfolio_overview())


@router.get("/aging")
async def delinquency_aging(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Overdue amounts by aging bucket"""
    return _as_json(system, system.reporting_engine.delinquency_aging())


@router.get("/payment-activity")
async def payment_activity(
    days_range: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Reported, approved and rejected payments over a trailing window"""
    days = days_range or get_config().payment_activity_days
    return _as_json(system, system.reporting_engine.payment_activity(days))


@router.get("/loan-stats")
async def loan_stats(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Collected and overdue amounts with the overdue installment list"""
    return _as_json(system, system.reporting_engine.loan_stats())


@router.get("/savings")
async def savings_kpis(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Savings dashboard KPIs"""
    return _as_json(system, system.reporting_engine.savings_kpis())


@router.get("/advisors")
async def advisor_stats(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Advisor portfolio and effectiveness"""
    return _as_json(system, system.reporting_engine.advisor_stats())


@router.get("/overdue/export")
async def export_overdue(
    format: str = Query("csv", pattern="^(csv|json)$"),
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Download the overdue installment list"""
    report_format = ReportFormat(format)
    content = system.reporting_engine.export_rows(
        system.reporting_engine.overdue_installments(), report_format
    )
    media_type = "text/csv" if report_format == ReportFormat.CSV else "application/json"
    return PlainTextResponse(content, media_type=media_type)


@router.get("/audit/integrity")
async def audit_integrity(
    identity: Identity = Depends(require_admin),
    system: PortalSystem = Depends(get_portal_system)
):
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()
