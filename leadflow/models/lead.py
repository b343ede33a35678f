import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from leadflow.database import Base


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_leads_tenant_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    phone = Column(Text, nullable=False)
    display_name = Column(Text)
    source = Column(Text, default="whatsapp")
    status = Column(Text, default="new")
    temperature = Column(Text, default="warm")  # cold, warm, hot
    score = Column(Integer)
    sentiment = Column(Text)
    last_message = Column(Text)
    last_message_at = Column(TIMESTAMP(timezone=True))
    message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))

    conversations = relationship("Conversation", back_populates="lead")
