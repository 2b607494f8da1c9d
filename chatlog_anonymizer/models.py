from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _check_iso_timestamp(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("timestamp must be an ISO-8601 datetime")
    return value


class CamelModel(BaseModel):
    """Control-plane models: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Chat log (uploaded file, transient)
# ---------------------------------------------------------------------------

class Role(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class ChatMessage(BaseModel):
    id: str
    role: Role
    content: str
    timestamp: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, value: Optional[str]) -> Optional[str]:
        return _check_iso_timestamp(value)


class ChatLog(BaseModel):
    version: Optional[str] = None
    messages: List[ChatMessage]
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Anonymization result (in-memory / delivery payload, never stored)
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    entity_type: str
    start: int
    end: int
    score: float


class AnonymizedMessage(BaseModel):
    id: str
    role: Role
    content: str
    timestamp: Optional[str] = None
    entities_found: int = Field(ge=0)


class AnonymizationResult(BaseModel):
    source_file_hash: str
    byte_size: int = Field(ge=0)
    processed_at: str
    messages: List[AnonymizedMessage] = []
    metadata: Optional[Dict[str, Any]] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Delivery targets
# ---------------------------------------------------------------------------

class NoAuth(BaseModel):
    type: Literal["none"] = "none"


class BearerTokenAuth(BaseModel):
    type: Literal["bearerToken"] = "bearerToken"
    token: str


class ApiKeyHeaderAuth(BaseModel):
    type: Literal["apiKeyHeader"] = "apiKeyHeader"
    header: str
    key: str


class BasicAuth(BaseModel):
    type: Literal["basic"] = "basic"
    username: str
    password: str


TargetAuth = Annotated[
    Union[NoAuth, BearerTokenAuth, ApiKeyHeaderAuth, BasicAuth],
    Field(discriminator="type"),
]


class DeliveryTarget(CamelModel):
    id: Optional[str] = None
    name: str
    url: str
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: Dict[str, str] = {}
    auth: TargetAuth = NoAuth()
    timeout_ms: int = Field(default=15000, gt=0)
    retries: int = Field(default=0, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    enabled: bool = True
    body_template: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Processing runs and audit events (persisted by the control plane)
# ---------------------------------------------------------------------------

class RunStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    anonymized = "anonymized"
    delivered = "delivered"
    failed = "failed"
    deleted = "deleted"


ALLOWED_TRANSITIONS = {
    RunStatus.queued: {RunStatus.processing, RunStatus.failed},
    RunStatus.processing: {RunStatus.anonymized, RunStatus.failed},
    RunStatus.anonymized: {RunStatus.delivered, RunStatus.failed},
    RunStatus.delivered: {RunStatus.deleted},
    RunStatus.failed: set(),
    RunStatus.deleted: set(),
}


class ErrorCode(str, Enum):
    read_error = "READ_ERROR"
    invalid_schema = "INVALID_SCHEMA"
    presidio_error = "PRESIDIO_ERROR"
    delivery_error = "DELIVERY_ERROR"


class AuditLevel(str, Enum):
    info = "info"
    warn = "warn"
    error = "error"


class AuditEventType(str, Enum):
    file_detected = "file_detected"
    worker_heartbeat = "worker_heartbeat"
    anonymize_started = "anonymize_started"
    anonymize_succeeded = "anonymize_succeeded"
    delivery_started = "delivery_started"
    delivery_succeeded = "delivery_succeeded"
    delivery_failed = "delivery_failed"
    cleanup_deleted = "cleanup_deleted"
    run_failed = "run_failed"


SOURCE_TYPE = "folderUpload"


class RunCreate(CamelModel):
    source_type: str = SOURCE_TYPE
    source_file_name: str
    source_file_size: int = Field(ge=0)
    status: RunStatus = RunStatus.queued


class RunUpdate(CamelModel):
    status: Optional[RunStatus] = None
    error_code: Optional[str] = None
    error_message_safe: Optional[str] = None
    presidio_stats: Optional[Dict[str, int]] = None
    delivery_target_count: Optional[int] = None
    delivery_success_count: Optional[int] = None
    delivery_failure_count: Optional[int] = None
    delivery_status_code: Optional[int] = None
    delivery_duration_ms: Optional[int] = None
    duration_ms: Optional[int] = None


class AuditEvent(CamelModel):
    run_id: Optional[str] = None
    event_type: AuditEventType
    level: AuditLevel = AuditLevel.info
    meta: Optional[Dict[str, Union[bool, int, float, str]]] = None
