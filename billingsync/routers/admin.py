import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Depends, status

from billingsync.core.auth import require_admin
from billingsync.core.container import BillingContainer, get_container
from billingsync.schemas.admin import AdminAction, AdminActionRequest, AdminActionResponse, AdminStatusResponse
from billingsync.schemas.auth import TokenData

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_action(action: AdminAction, container: BillingContainer) -> AdminActionResponse:
    if action == AdminAction.SYNC_SUBSCRIPTIONS:
        result = await container.sync_job.sync_subscriptions()
        return AdminActionResponse(success=True, message="Subscription sync completed", result=result.model_dump())

    if action == AdminAction.PROCESS_JOBS:
        batch = await container.retry_handler.process_pending_jobs()
        return AdminActionResponse(success=True, message="Pending jobs processed", result=batch.model_dump())

    if action == AdminAction.START_JOB_PROCESSOR:
        await container.job_processor.start()
        return AdminActionResponse(success=True, message="Job processor started")

    if action == AdminAction.STOP_JOB_PROCESSOR:
        await container.job_processor.stop()
        return AdminActionResponse(success=True, message="Job processor stopped")

    container.razorpay_breaker.reset()
    return AdminActionResponse(success=True, message="Circuit breaker reset")


@router.post("/sync", response_model=AdminActionResponse)
async def admin_sync(
    action_request: AdminActionRequest,
    admin: TokenData = Depends(require_admin),
    container: BillingContainer = Depends(get_container),
):
    """Trigger an operator action"""
    try:
        action = AdminAction(action_request.action)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")

    logger.info(f"🛠️ Admin {admin.user_id} triggered {action.value}")
    try:
        return await _run_action(action, container)
    except Exception as e:
        logger.exception(f"❌ Error in admin action {action.value}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Admin action failed: {str(e)}"
        )


@router.get("/status", response_model=AdminStatusResponse)
async def admin_status(
    admin: TokenData = Depends(require_admin),
    container: BillingContainer = Depends(get_container),
):
    """Combined sync, scheduler and circuit breaker report"""
    try:
        sync_report = await container.sync_job.generate_sync_report()
    except Exception as e:
        logger.exception(f"❌ Error getting admin status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to build status report: {str(e)}"
        )

    return AdminStatusResponse(
        sync_report=sync_report,
        job_processor=container.job_processor.get_status(),
        circuit_breaker=container.razorpay_breaker.get_stats(),
        database_circuit_breaker=container.database_breaker.get_stats(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
