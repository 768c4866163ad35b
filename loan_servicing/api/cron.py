"""
Cron trigger endpoints

For an external scheduler (OS cron, a hosting platform's cron) instead of,
or alongside, the in-process one. The sweep runs in the background; the
request returns right away.
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from .auth import get_system, verify_cron_secret
from ..scanner import OVERDUE_SWEEP, REMINDER_SWEEP
from ..system import LoanServicingSystem


router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.get("/installment-reminders")
async def run_installment_reminders(
    background_tasks: BackgroundTasks,
    system: LoanServicingSystem = Depends(get_system)
):
    background_tasks.add_task(system.scheduler.trigger, REMINDER_SWEEP)
    return {"success": True, "message": "Installment reminder job started"}


@router.get("/overdue-notices")
async def run_overdue_notices(
    background_tasks: BackgroundTasks,
    system: LoanServicingSystem = Depends(get_system)
):
    background_tasks.add_task(system.scheduler.trigger, OVERDUE_SWEEP)
    return {"success": True, "message": "Overdue notice job started"}
