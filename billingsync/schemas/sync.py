from pydantic import BaseModel, Field
from typing import Optional, List


class SyncDiscrepancy(BaseModel):
    subscription_id: str
    local_status: str
    razorpay_status: str
    action: str


class SyncError(BaseModel):
    subscription_id: str
    error: str


class SyncResult(BaseModel):
    total_subscriptions: int = 0
    synced_count: int = 0
    discrepancies_found: int = 0
    errors_count: int = 0
    discrepancies: List[SyncDiscrepancy] = Field(default_factory=list)
    errors: List[SyncError] = Field(default_factory=list)

    def add_discrepancy(self, discrepancy: SyncDiscrepancy) -> None:
        self.discrepancies_found += 1
        self.discrepancies.append(discrepancy)

    def add_error(self, subscription_id: str, error: str) -> None:
        self.errors_count += 1
        self.errors.append(SyncError(subscription_id=subscription_id, error=error))


class SyncReport(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    past_due_subscriptions: int
    cancelled_subscriptions: int
    last_sync_results: Optional[SyncResult] = None
