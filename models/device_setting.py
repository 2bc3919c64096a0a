"""DeviceSetting model for durable per-installation values."""

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from database import Base


class DeviceSetting(Base):
    """One string persisted under one key."""

    __tablename__ = "device_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
