"""
SQLAlchemy ORM models for the installed-package registry.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class InstalledPackageRecord(Base):
    """
    One installed version of a package and the files it placed.
    """
    __tablename__ = "installed_packages"
    __table_args__ = (UniqueConstraint("name", "version", name="uq_name_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, index=True)
    version = Column(String(100), nullable=False)
    prefix_path = Column(Text, nullable=False, unique=True)

    source_url = Column(Text)
    content_hash = Column(String(64))

    installed_files = Column(JSON)  # Paths relative to prefix_path
    wrappers = Column(JSON)         # wrapper name -> target relative to prefix_path

    is_active = Column(Boolean, default=False, index=True)
    is_pinned = Column(Boolean, default=False)

    installed_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<InstalledPackageRecord(name='{self.name}', version='{self.version}', active={self.is_active})>"
