from pydantic import BaseModel
from typing import Optional, Dict, Any
from enum import Enum

from billingsync.schemas.sync import SyncReport


class AdminAction(str, Enum):
    SYNC_SUBSCRIPTIONS = "sync_subscriptions"
    PROCESS_JOBS = "process_jobs"
    START_JOB_PROCESSOR = "start_job_processor"
    STOP_JOB_PROCESSOR = "stop_job_processor"
    RESET_CIRCUIT_BREAKER = "reset_circuit_breaker"


class AdminActionRequest(BaseModel):
    action: str


class AdminActionResponse(BaseModel):
    success: bool
    message: str
    result: Optional[Dict[str, Any]] = None


class AdminStatusResponse(BaseModel):
    sync_report: SyncReport
    job_processor: Dict[str, Any]
    circuit_breaker: Dict[str, Any]
    database_circuit_breaker: Dict[str, Any]
    timestamp: str
