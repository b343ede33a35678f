from leadflow.schemas.dispatch import DispatchRequest, DispatchResponse, LearnRequest, LearnResponse, TaskType
from leadflow.schemas.inbound import ConnectionUpdate, ContentKind, InboundEvent, MediaRef, Provider
from leadflow.schemas.tenant_config import TenantAIConfig
from leadflow.schemas.webhook import WebhookResponse

__all__ = [
    "ConnectionUpdate",
    "ContentKind",
    "DispatchRequest",
    "DispatchResponse",
    "InboundEvent",
    "LearnRequest",
    "LearnResponse",
    "MediaRef",
    "Provider",
    "TaskType",
    "TenantAIConfig",
    "WebhookResponse",
]
