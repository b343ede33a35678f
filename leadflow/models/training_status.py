import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from leadflow.database import Base


class TrainingStatus(Base):
    __tablename__ = "training_status"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, unique=True)
    status = Column(Text, nullable=False, default="learning")  # learning, ready, active, paused
    linked_connection_id = Column(UUID(as_uuid=True), ForeignKey("channel_connections.id"))
    started_at = Column(TIMESTAMP(timezone=True), nullable=False)
    ready_at = Column(TIMESTAMP(timezone=True))
    activated_at = Column(TIMESTAMP(timezone=True))
    paused_at = Column(TIMESTAMP(timezone=True))
    messages_analyzed = Column(Integer, nullable=False, default=0)
    min_days_required = Column(Integer, nullable=False, default=7)
    min_messages_required = Column(Integer, nullable=False, default=100)
    confidence_score = Column(Numeric(5, 2), default=0)
    faqs_detected = Column(Integer, nullable=False, default=0)
    response_patterns_learned = Column(Integer, nullable=False, default=0)
    company_info_extracted = Column(Integer, nullable=False, default=0)
    objections_learned = Column(Integer, nullable=False, default=0)
    product_info_extracted = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP(timezone=True))
