"""Pydantic schemas for webhook notifications"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class NotificationType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION_PREAPPROVAL = "subscription_preapproval"
    SUBSCRIPTION_PAYMENT = "subscription_authorized_payment"
    SUBSCRIPTION_PLAN = "subscription_preapproval_plan"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, raw: Optional[str]) -> "NotificationType":
        """Normalize the processor's topic names (it uses several aliases)"""
        return _TYPE_ALIASES.get((raw or "").strip().lower(), cls.UNKNOWN)


_TYPE_ALIASES = {
    "payment": NotificationType.PAYMENT,
    "subscription_preapproval": NotificationType.SUBSCRIPTION_PREAPPROVAL,
    "preapproval": NotificationType.SUBSCRIPTION_PREAPPROVAL,
    "subscription": NotificationType.SUBSCRIPTION_PREAPPROVAL,
    "subscription_authorized_payment": NotificationType.SUBSCRIPTION_PAYMENT,
    "authorized_payment": NotificationType.SUBSCRIPTION_PAYMENT,
    "subscription_preapproval_plan": NotificationType.SUBSCRIPTION_PLAN,
    "plan": NotificationType.SUBSCRIPTION_PLAN,
}


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        # The processor sends numeric IDs for payments
        if v is None or v == "":
            raise ValueError("data.id is required")
        return str(v)


class WebhookPayload(BaseModel):
    """Body of POST /webhook"""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    action: Optional[str] = None
    live_mode: bool = False
    date_created: Optional[str] = None
    data: WebhookData

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        if v is None or v == "":
            raise ValueError("id is required")
        return str(v)

    @field_validator("type")
    @classmethod
    def check_type(cls, v):
        if not v or not v.strip():
            raise ValueError("type is required")
        return v


class Notification(BaseModel):
    """Immutable, parsed view of one inbound notification"""
    model_config = ConfigDict(frozen=True)

    id: str
    type: NotificationType
    raw_type: str
    action: str
    resource_id: str
    raw_body: bytes
    received_at: datetime

    def idempotency_key(self, state_version: Optional[str] = None) -> str:
        """Key for one logical event: the resource plus the processor state being applied"""
        key = f"{self.type.value}:{self.action}:{self.resource_id}"
        return f"{key}:{state_version}" if state_version else key


class ResolutionHints(BaseModel):
    """Correlation keys available for matching a notification to a local entity"""
    external_reference: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_payment_id: Optional[str] = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    payer_email: Optional[str] = None
    resource_created_at: Optional[datetime] = None

    def for_log(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, mode="json")


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processing_time_ms: int
    stage: str
    notification_id: Optional[str] = None
    duplicate: bool = False
    from_cache: bool = False
    result: Optional[Dict[str, Any]] = None


class PipelineStage(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    DEDUPLICATED = "deduplicated"
    PARSED = "parsed"
    DISPATCHED = "dispatched"
    RESOLVED = "resolved"
    RECONCILED = "reconciled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class PipelineOutcome(BaseModel):
    """Structured event emitted once per request, whatever happened"""
    notification_id: Optional[str] = None
    notification_type: Optional[str] = None
    action: Optional[str] = None
    resource_id: Optional[str] = None
    stage: PipelineStage
    last_stage: PipelineStage  # furthest stage reached before the terminal state
    success: bool
    status_code: int
    message: str
    duration_ms: float
    duplicate: bool = False
    from_cache: bool = False
    failed_stage: Optional[str] = None  # verify / parse / dedupe / fetch / ...
    error_category: Optional[str] = None
    error: Optional[str] = None
    resolution_method: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    timestamp: datetime

    def to_response(self) -> Dict[str, Any]:
        """Body returned to the processor"""
        if not self.success:
            return {
                "success": False,
                "stage": self.failed_stage or self.last_stage.value,
                "error": self.error,
                "message": self.message,
                "processing_time_ms": int(self.duration_ms),
            }
        return WebhookResponse(
            success=True,
            message=self.message,
            processing_time_ms=int(self.duration_ms),
            stage=self.stage.value,
            notification_id=self.notification_id,
            duplicate=self.duplicate,
            from_cache=self.from_cache,
            result=self.result
        ).model_dump(exclude_none=True)
