import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from leadflow.database import Base


class ChannelConnection(Base):
    __tablename__ = "channel_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    name = Column(Text)
    provider = Column(Text, nullable=False)  # evolution, official
    instance_name = Column(Text)  # evolution instance
    phone_number_id = Column(Text)  # official cloud api
    phone_number = Column(Text)
    verify_token = Column(Text)
    api_url = Column(Text)
    api_key = Column(Text)
    access_token = Column(Text)
    status = Column(Text, default="disconnected")  # connected, connecting, disconnected, qr_pending
    qr_code = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    tenant = relationship("Tenant", back_populates="connections")


class ConnectionHealthCheck(Base):
    __tablename__ = "connection_health_checks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("channel_connections.id"), nullable=False, unique=True)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    provider = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # healthy, degraded, down, unknown
    response_time_ms = Column(Integer, default=0)
    error_message = Column(Text)
    last_check_at = Column(TIMESTAMP(timezone=True), nullable=False)
