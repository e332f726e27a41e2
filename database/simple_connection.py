# database/simple_connection.py
# Engine/session ownership plus the dict-returning helpers shared by sync, webhook and job code

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Any, Optional

from sqlalchemy import create_engine, func
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import AppConfig
from database.models import (
    Base, GHLConnection, Lead, SyncLog, model_to_dict, utcnow,
)

logger = logging.getLogger(__name__)


def normalize_phone_digits(phone: Optional[str]) -> str:
    """Last 10 digits of a phone number, used for cross-location matching"""
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return digits[-10:]


class SimpleDatabase:
    def __init__(self, database_url: Optional[str] = None, config=AppConfig):
        self.db_path = database_url or config.DATABASE_URL

        logger.info(f"📁 Using database: {self.db_path}")
        engine_kwargs = {"echo": False}
        if "sqlite" in self.db_path:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.db_path or self.db_path.rstrip("/") == "sqlite:":
                # One shared connection so every session sees the same in-memory database
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(self.db_path, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.init_database()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def init_database(self):
        """Create every table that does not exist yet"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("✅ Database initialized")
        except Exception as e:
            logger.error(f"❌ Database initialization error: {e}")
            raise

    @contextmanager
    def session_scope(self) -> Session:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            return model_to_dict(session.get(GHLConnection, connection_id))

    def get_active_connections(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.session_scope() as session:
            query = session.query(GHLConnection).filter(GHLConnection.is_active.is_(True))
            if user_id:
                query = query.filter(GHLConnection.user_id == user_id)
            return [model_to_dict(c) for c in query.order_by(GHLConnection.created_at).all()]

    def get_active_connection_by_location(self, location_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            connection = (
                session.query(GHLConnection)
                .filter(GHLConnection.location_id == location_id, GHLConnection.is_active.is_(True))
                .first()
            )
            return model_to_dict(connection)

    def update_connection(self, connection_id: str, update_data: Dict[str, Any]) -> bool:
        with self.session_scope() as session:
            connection = session.get(GHLConnection, connection_id)
            if not connection:
                logger.warning(f"⚠️ Connection {connection_id} not found for update")
                return False
            for key, value in update_data.items():
                setattr(connection, key, value)
            return True

    def deactivate_connection(self, connection_id: str) -> bool:
        logger.info(f"🔌 Deactivating connection {connection_id}")
        return self.update_connection(connection_id, {"is_active": False})

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            return model_to_dict(session.get(Lead, lead_id))

    def get_lead_by_ghl_contact_id(self, ghl_contact_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            lead = session.query(Lead).filter(Lead.ghl_contact_id == ghl_contact_id).first()
            return model_to_dict(lead)

    def get_leads_for_connection(self, connection_id: str) -> List[Dict[str, Any]]:
        with self.session_scope() as session:
            leads = session.query(Lead).filter(Lead.connection_id == connection_id).all()
            return [model_to_dict(lead) for lead in leads]

    def update_lead(self, lead_id: str, update_data: Dict[str, Any]) -> bool:
        with self.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                logger.warning(f"⚠️ Lead {lead_id} not found for update")
                return False
            for key, value in update_data.items():
                setattr(lead, key, value)
            return True

    def find_lead_by_email_or_phone(self, email: Optional[str], phone: Optional[str],
                                    exclude_location_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Heuristic cross-location lookup: case-insensitive email first,
        then the last 10 phone digits.
        """
        with self.session_scope() as session:
            base = session.query(Lead).filter(Lead.is_archived.isnot(True))
            if exclude_location_id:
                base = base.filter(Lead.ghl_location_id != exclude_location_id)

            if email:
                lead = base.filter(func.lower(Lead.email) == email.strip().lower()).first()
                if lead:
                    return model_to_dict(lead)

            digits = normalize_phone_digits(phone)
            if len(digits) >= 7:
                for lead in base.filter(Lead.phone.isnot(None)).all():
                    if normalize_phone_digits(lead.phone) == digits:
                        return model_to_dict(lead)
        return None

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def log_sync(self, sync_type: str, status: str, user_id: Optional[str] = None,
                 connection_id: Optional[str] = None, error_message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None, **counts) -> str:
        """Write one ghl_sync_logs row; counts are keyword args like contacts_synced=3"""
        entry = SyncLog(
            sync_type=sync_type,
            status=status,
            user_id=user_id,
            connection_id=connection_id,
            error_message=error_message,
            details=details or {},
            **counts,
        )
        with self.session_scope() as session:
            session.add(entry)
            session.flush()
            return entry.id

    def get_stats(self) -> Dict[str, Any]:
        """Row counts per table"""
        with self.session_scope() as session:
            return {
                table.name: session.query(func.count()).select_from(table).scalar()
                for table in Base.metadata.sorted_tables
            }


_db_instance: Optional[SimpleDatabase] = None
_db_lock = threading.Lock()


def get_db() -> SimpleDatabase:
    """
    Process-wide database instance, created on first use.
    Also serves as the FastAPI dependency.
    """
    global _db_instance
    with _db_lock:
        if _db_instance is None:
            _db_instance = SimpleDatabase()
        return _db_instance


def set_db(database: Optional[SimpleDatabase]):
    """Swap the process-wide instance (application startup and tests)"""
    global _db_instance
    with _db_lock:
        _db_instance = database


__all__ = ["SimpleDatabase", "get_db", "set_db", "normalize_phone_digits", "utcnow"]
