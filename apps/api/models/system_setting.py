"""SystemSetting model for runtime feature flags and pricing."""

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class SystemSetting(Base):
    """Key/value runtime setting editable by admins."""

    __tablename__ = "system_settings"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    description = Column(String, nullable=True)
    category = Column(String, nullable=False, default="general")  # general, pricing, features, limits
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
