from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy import or_
from sqlmodel import Field, Session, SQLModel, create_engine, select

from thrag.config import SETTINGS
from thrag.errors import PersistenceError
from thrag.utils.time import ensure_utc, now_utc

logger = logging.getLogger(__name__)


class RecordRow(SQLModel, table=True):
    """One stored record; the payload is kept as JSON."""

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    key: str = Field(index=True)
    partition: Optional[str] = Field(default=None, index=True)
    sort: Optional[str] = Field(default=None, index=True)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    payload_json: str


def make_engine(url: str = SETTINGS.database_url):
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False)


class SqlStore:
    """``DurableStore`` over a SQL database (SQLite by default)."""

    def __init__(self, url: str = SETTINGS.database_url, clock: Callable[[], datetime] = now_utc) -> None:
        self.engine = make_engine(url)
        self.clock = clock
        self.init_db()

    def init_db(self) -> None:
        try:
            SQLModel.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not initialise database: {e}") from e

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def put(
        self,
        table: str,
        key: str,
        record: Dict[str, Any],
        partition: Optional[str] = None,
        sort: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        payload = json.dumps(record, sort_keys=True, default=str)
        try:
            with Session(self.engine) as s:
                row = s.exec(select(RecordRow).where(RecordRow.table_name == table, RecordRow.key == key)).first()
                if row is None:
                    row = RecordRow(table_name=table, key=key, payload_json=payload)
                row.payload_json = payload
                row.partition = partition
                row.sort = sort
                row.expires_at = ensure_utc(expires_at) if expires_at is not None else None
                s.add(row)
                s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"put {table}/{key} failed: {e}") from e

    def _live(self, stmt):
        now = self._now()
        return stmt.where(or_(RecordRow.expires_at.is_(None), RecordRow.expires_at > now))

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            with Session(self.engine) as s:
                stmt = self._live(select(RecordRow).where(RecordRow.table_name == table, RecordRow.key == key))
                row = s.exec(stmt).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"get {table}/{key} failed: {e}") from e
        return json.loads(row.payload_json) if row is not None else None

    def query(self, table: str, partition: str, sort_range: Optional[Tuple[str, str]] = None) -> List[Dict[str, Any]]:
        stmt = select(RecordRow).where(RecordRow.table_name == table, RecordRow.partition == partition)
        if sort_range is not None:
            stmt = stmt.where(RecordRow.sort >= sort_range[0], RecordRow.sort <= sort_range[1])
        stmt = self._live(stmt).order_by(RecordRow.sort, RecordRow.key)
        try:
            with Session(self.engine) as s:
                rows = s.exec(stmt).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"query {table}/{partition} failed: {e}") from e
        return [json.loads(r.payload_json) for r in rows]

    def purge_expired(self) -> int:
        try:
            with Session(self.engine) as s:
                stmt = select(RecordRow).where(RecordRow.expires_at.is_not(None), RecordRow.expires_at <= self._now())
                rows = s.exec(stmt).all()
                for row in rows:
                    s.delete(row)
                s.commit()
                removed = len(rows)
        except SQLAlchemyError as e:
            raise PersistenceError(f"purge failed: {e}") from e
        if removed:
            logger.info("purged %d expired records", removed)
        return removed
