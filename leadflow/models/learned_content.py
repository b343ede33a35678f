import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from leadflow.database import Base, JSONType


class LearnedContent(Base):
    __tablename__ = "learned_content"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    content_type = Column(Text, nullable=False)  # faq, response_pattern, company_info, objection_handling, product_info
    question = Column(Text)
    answer = Column(Text, nullable=False)
    context = Column(Text)
    keywords = Column(JSONType, default=list)
    occurrence_count = Column(Integer, nullable=False, default=1)
    effectiveness_score = Column(Numeric(5, 2), default=0)
    source_message_id = Column(UUID(as_uuid=True))
    source_conversation_id = Column(UUID(as_uuid=True))
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))
