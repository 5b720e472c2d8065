"""
Registry Service.

Persists which package versions are installed, which one is active per
name, and which wrappers each version owns.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from cellar.schemas.manifest import InstalledPackage
from cellar.services.database.engine import DatabaseManager
from cellar.services.database.models import InstalledPackageRecord
from cellar.utils.logger import log


def _to_package(record: InstalledPackageRecord) -> InstalledPackage:
    return InstalledPackage(
        name=record.name,
        version=record.version,
        prefix_path=Path(record.prefix_path),
        installed_files=set(record.installed_files or []),
        wrappers=dict(record.wrappers or {}),
        content_hash=record.content_hash,
        source_url=record.source_url,
        active=bool(record.is_active),
        pinned=bool(record.is_pinned),
        installed_at=record.installed_at,
    )


class RegistryService:
    """
    Handles recording, querying and activating installed package versions.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or DatabaseManager()
        self.db_manager.init_db()

    def register(
        self,
        name: str,
        version: str,
        prefix_path: Path,
        installed_files: Set[str],
        wrappers: Dict[str, str],
        content_hash: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> InstalledPackage:
        """
        Creates or replaces the record for ``name`` at ``version``.
        New records start inactive; use set_active to activate.
        """
        session = self.db_manager.get_session()
        try:
            record = session.query(InstalledPackageRecord).filter_by(name=name, version=version).first()
            if record is None:
                record = InstalledPackageRecord(name=name, version=version)
                session.add(record)
                log.info(f"Registered {name} {version}")
            else:
                log.info(f"Updating registry record for {name} {version}")

            record.prefix_path = str(prefix_path)
            record.installed_files = sorted(installed_files)
            record.wrappers = dict(wrappers)
            record.content_hash = content_hash
            record.source_url = source_url
            record.is_active = False
            record.is_pinned = False
            record.installed_at = datetime.now(timezone.utc)
            session.commit()
            return _to_package(record)
        finally:
            session.close()

    def get(self, name: str, version: str) -> Optional[InstalledPackage]:
        session = self.db_manager.get_session()
        try:
            record = session.query(InstalledPackageRecord).filter_by(name=name, version=version).first()
            return _to_package(record) if record else None
        finally:
            session.close()

    def list(self, name: Optional[str] = None) -> List[InstalledPackage]:
        """Installed packages ordered by name, then oldest install first."""
        session = self.db_manager.get_session()
        try:
            query = session.query(InstalledPackageRecord)
            if name is not None:
                query = query.filter_by(name=name)
            records = query.order_by(
                InstalledPackageRecord.name, InstalledPackageRecord.installed_at, InstalledPackageRecord.id
            ).all()
            return [_to_package(r) for r in records]
        finally:
            session.close()

    def get_active(self, name: str) -> Optional[InstalledPackage]:
        session = self.db_manager.get_session()
        try:
            record = session.query(InstalledPackageRecord).filter_by(name=name, is_active=True).first()
            return _to_package(record) if record else None
        finally:
            session.close()

    def get_pinned(self, name: str) -> Optional[InstalledPackage]:
        session = self.db_manager.get_session()
        try:
            record = session.query(InstalledPackageRecord).filter_by(name=name, is_pinned=True).first()
            return _to_package(record) if record else None
        finally:
            session.close()

    def set_active(self, name: str, version: Optional[str]):
        """Mark ``version`` active and every other version of ``name`` inactive."""
        session = self.db_manager.get_session()
        try:
            for record in session.query(InstalledPackageRecord).filter_by(name=name).all():
                record.is_active = record.version == version
            session.commit()
        finally:
            session.close()

    def set_pinned(self, name: str, version: Optional[str]):
        """Pin ``version`` of ``name``; ``None`` clears the pin."""
        session = self.db_manager.get_session()
        try:
            for record in session.query(InstalledPackageRecord).filter_by(name=name).all():
                record.is_pinned = record.version == version
            session.commit()
        finally:
            session.close()

    def remove(self, name: str, version: str) -> bool:
        session = self.db_manager.get_session()
        try:
            deleted = session.query(InstalledPackageRecord).filter_by(name=name, version=version).delete()
            session.commit()
            if deleted:
                log.info(f"Removed registry record for {name} {version}")
            return bool(deleted)
        finally:
            session.close()

    def wrapper_owner(self, wrapper_name: str) -> Optional[str]:
        """Name of the package whose active version owns ``wrapper_name``."""
        session = self.db_manager.get_session()
        try:
            for record in session.query(InstalledPackageRecord).filter_by(is_active=True).all():
                if wrapper_name in (record.wrappers or {}):
                    return record.name
            return None
        finally:
            session.close()
