from leadflow.models.ai_settings import AISettings
from leadflow.models.channel_connection import ChannelConnection, ConnectionHealthCheck
from leadflow.models.conversation import Conversation
from leadflow.models.counters import RateLimitCounter, UsageCounter
from leadflow.models.lead import Lead
from leadflow.models.learned_content import LearnedContent
from leadflow.models.message import Message
from leadflow.models.notification import Notification
from leadflow.models.tenant import Subscription, Tenant, TenantMember
from leadflow.models.training_status import TrainingStatus

__all__ = [
    "Tenant",
    "Subscription",
    "TenantMember",
    "ChannelConnection",
    "ConnectionHealthCheck",
    "Lead",
    "Conversation",
    "Message",
    "AISettings",
    "TrainingStatus",
    "LearnedContent",
    "RateLimitCounter",
    "UsageCounter",
    "Notification",
]
