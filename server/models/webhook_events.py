from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from core.orm import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (Index("idx_webhook_events_source_time", "source", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)
    event_name = Column(Text)
    payload = Column(JSONB)
    processed = Column(Boolean, nullable=False, server_default="false")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
