# api/services/upsert_reconciler.py

import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from database.models import utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

# Postgres: "there is no unique or exclusion constraint matching the ON CONFLICT specification"
PG_INVALID_CONFLICT_TARGET = "42P10"
SQLITE_INVALID_CONFLICT_TARGET = "on conflict clause does not match any primary key or unique constraint"

NEVER_UPDATED = ("id", "created_at")


def is_missing_conflict_target(error: DBAPIError) -> bool:
    """True when the backend rejected ON CONFLICT because the key has no unique constraint."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == PG_INVALID_CONFLICT_TARGET:
        return True
    return SQLITE_INVALID_CONFLICT_TARGET in str(orig or error).lower()


class UpsertReconciler:
    """
    Idempotent persistence keyed by an external id.

    Native INSERT .. ON CONFLICT DO UPDATE where the backend supports it for
    the key; otherwise select-by-key then update or insert. The fallback is
    not atomic, sync for one connection runs serially so it is not raced.
    """

    def __init__(self, db: SimpleDatabase):
        self.db = db
        self._fallback_keys = set()

    def upsert(self, model, record: Dict[str, Any], conflict_key: str,
               immutable: Sequence[str] = ()) -> str:
        """Insert or update one row; returns the row id."""
        if record.get(conflict_key) in (None, ""):
            raise ValueError(f"{model.__tablename__} record has no {conflict_key}")

        cache_key = (model.__tablename__, conflict_key)
        if cache_key not in self._fallback_keys:
            try:
                return self._native_upsert(model, record, conflict_key, immutable)
            except DBAPIError as e:
                if not is_missing_conflict_target(e):
                    raise
                logger.warning(
                    f"🔄 Native upsert unsupported for {model.__tablename__}.{conflict_key}, "
                    f"using select-then-write"
                )
                self._fallback_keys.add(cache_key)
        return self._fallback_upsert(model, record, conflict_key, immutable)

    def upsert_many(self, model, records: Iterable[Dict[str, Any]], conflict_key: str,
                    immutable: Sequence[str] = ()) -> Dict[str, int]:
        """Upsert a batch; returns {"synced": n, "errors": n}."""
        stats = {"synced": 0, "errors": 0}
        for record in records:
            try:
                self.upsert(model, record, conflict_key, immutable)
                stats["synced"] += 1
            except (SQLAlchemyError, ValueError) as e:
                logger.error(f"❌ Upsert into {model.__tablename__} failed for {record.get(conflict_key)}: {e}")
                stats["errors"] += 1
        return stats

    def _insert_factory(self):
        dialect = self.db.dialect_name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
            return insert
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
            return insert
        return None

    def _update_columns(self, model, record: Dict[str, Any], conflict_key: str,
                        immutable: Sequence[str]) -> Dict[str, Any]:
        skip = set(NEVER_UPDATED) | set(immutable) | {conflict_key}
        columns = model.__table__.columns
        return {key: value for key, value in record.items() if key not in skip and key in columns}

    def _find_id(self, session, model, conflict_key: str, value: Any) -> Optional[str]:
        return (
            session.query(model.id)
            .filter(getattr(model, conflict_key) == value)
            .order_by(model.id)
            .limit(1)
            .scalar()
        )

    def _native_upsert(self, model, record: Dict[str, Any], conflict_key: str,
                       immutable: Sequence[str]) -> str:
        insert = self._insert_factory()
        if insert is None:
            self._fallback_keys.add((model.__tablename__, conflict_key))
            return self._fallback_upsert(model, record, conflict_key, immutable)

        stmt = insert(model.__table__).values(**record)
        updates = {key: stmt.excluded[key] for key in self._update_columns(model, record, conflict_key, immutable)}
        if "updated_at" in model.__table__.columns:
            updates["updated_at"] = utcnow()

        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=[conflict_key], set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[conflict_key])

        with self.db.session_scope() as session:
            session.execute(stmt)
            return self._find_id(session, model, conflict_key, record[conflict_key])

    def _fallback_upsert(self, model, record: Dict[str, Any], conflict_key: str,
                         immutable: Sequence[str]) -> str:
        with self.db.session_scope() as session:
            existing_id = self._find_id(session, model, conflict_key, record[conflict_key])
            if existing_id:
                row = session.get(model, existing_id)
                for key, value in self._update_columns(model, record, conflict_key, immutable).items():
                    setattr(row, key, value)
                return existing_id

            row = model(**record)
            session.add(row)
            session.flush()
            return row.id
