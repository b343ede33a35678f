import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from leadflow.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True))
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"))
    type = Column(Text, nullable=False)  # new_message, ai_response, hot_lead, api_health
    title = Column(Text, nullable=False)
    description = Column(Text)
    priority = Column(Text, nullable=False, default="normal")  # low, normal, high
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
