import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from leadflow.database import Base


class RateLimitCounter(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("tenant_id", "operation", name="uq_rate_limits_tenant_operation"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    operation = Column(Text, nullable=False)
    window_start = Column(TIMESTAMP(timezone=True), nullable=False)
    reset_at = Column(TIMESTAMP(timezone=True), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("tenant_id", "period_start", name="uq_usage_counters_tenant_period"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    period_start = Column(TIMESTAMP(timezone=True), nullable=False)
    period_end = Column(TIMESTAMP(timezone=True), nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    token_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP(timezone=True))
