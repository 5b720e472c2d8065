"""
Database engine and session management for the cellar registry.
"""

from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from cellar.config.manager import config_manager
from cellar.services.database.models import Base
from cellar.utils.logger import log

DEFAULT_DB_PATH = config_manager.layout().db_path

class DatabaseManager:
    """
    Manages the SQLAlchemy engine and sessions.
    """
    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(f"sqlite:///{self.db_path}")
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self):
        """
        Create all tables if they don't exist.
        """
        try:
            Base.metadata.create_all(bind=self.engine)
            log.debug(f"Registry database ready at {self.db_path}")
        except Exception as e:
            log.error(f"Failed to initialize database: {e}")
            raise

    def get_session(self) -> Session:
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()
