from sqlalchemy import Column, DateTime, Text, func

from core.orm import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Text, primary_key=True)
    name = Column(Text)
    email = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
