from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import UUID

from leadflow.database import Base, JSONType


class AISettings(Base):
    __tablename__ = "ai_settings"

    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), primary_key=True)
    is_enabled = Column(Boolean, default=True)
    ai_name = Column(Text)
    company_name = Column(Text)
    system_prompt = Column(Text)
    blocked_topics = Column(JSONType, default=list)
    transfer_keywords = Column(JSONType, default=list)
    active_hours_start = Column(Text)  # "HH:MM"
    active_hours_end = Column(Text)
    timezone = Column(Text, default="America/Sao_Paulo")
    max_context_messages = Column(Integer, default=20)
