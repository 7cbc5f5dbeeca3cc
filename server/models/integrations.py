from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)

from core.orm import Base


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
        Index("idx_integrations_instance_name", "instance_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    provider = Column(Text, nullable=False)
    instance_name = Column(Text)
    status = Column(Text, nullable=False, server_default="not_initialized")
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(BigInteger)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
