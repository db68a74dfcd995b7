"""Document store used by every record type.

Each record is a JSON document partitioned by its owning clinician
(``userId``) and addressed by ``id`` inside a named collection.  The handlers
only rely on get, put, partial update, delete, owner-scoped query and full
scan; anything more specific is expressed as a Python predicate over the
decoded documents.
"""

from __future__ import annotations

import copy
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

PATIENTS = "patients"
APPOINTMENTS = "appointments"
TIME_BLOCKS = "time_blocks"
REPORTS = "reports"
TEMPLATES = "templates"
PORTAL_USERS = "portal_users"

OWNER_KEY = "userId"

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]

metadata = sa.MetaData()

documents_table = sa.Table(
    "documents",
    metadata,
    sa.Column("collection", sa.String(64), primary_key=True),
    sa.Column("owner_id", sa.String(128), primary_key=True),
    sa.Column("id", sa.String(128), primary_key=True),
    sa.Column("body", sa.JSON, nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
)
sa.Index("idx_documents_collection_owner", documents_table.c.collection, documents_table.c.owner_id)
sa.Index("idx_documents_collection_id", documents_table.c.collection, documents_table.c.id)


class DocumentStore(Protocol):
    """Key/value and query contract consumed by the record handlers."""

    def get(self, collection: str, owner_id: str, item_id: str) -> Optional[Document]: ...

    def put(self, collection: str, item: Mapping[str, Any]) -> Document: ...

    def update(
        self, collection: str, owner_id: str, item_id: str, patch: Mapping[str, Any]
    ) -> Optional[Document]: ...

    def delete(self, collection: str, owner_id: str, item_id: str) -> bool: ...

    def query(
        self,
        collection: str,
        *,
        owner_id: Optional[str] = None,
        equals: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
        limit: Optional[int] = None,
    ) -> List[Document]: ...

    def scan(
        self,
        collection: str,
        *,
        equals: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
    ) -> List[Document]: ...


def _matches(item: Document, equals: Optional[Mapping[str, Any]], where: Optional[Predicate]) -> bool:
    if equals:
        for key, expected in equals.items():
            if item.get(key) != expected:
                return False
    if where is not None and not where(item):
        return False
    return True


class SqlDocumentStore:
    """:class:`DocumentStore` backed by a single SQLAlchemy table."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: sa.Engine, *, create: bool = True) -> "SqlDocumentStore":
        if create:
            metadata.create_all(engine)
        return cls(sessionmaker(bind=engine, future=True))

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _key_clause(self, collection: str, owner_id: str, item_id: str):
        table = documents_table
        return sa.and_(
            table.c.collection == collection,
            table.c.owner_id == owner_id,
            table.c.id == item_id,
        )

    def get(self, collection: str, owner_id: str, item_id: str) -> Optional[Document]:
        with self.session_scope() as session:
            row = session.execute(
                sa.select(documents_table.c.body).where(
                    self._key_clause(collection, owner_id, item_id)
                )
            ).first()
        if row is None:
            return None
        return copy.deepcopy(row.body)

    def put(self, collection: str, item: Mapping[str, Any]) -> Document:
        """Insert or replace ``item`` keyed by its ``userId`` and ``id``."""

        body = copy.deepcopy(dict(item))
        owner_id = body.get(OWNER_KEY)
        item_id = body.get("id")
        if not owner_id or not item_id:
            raise ValueError("documents require both userId and id")
        now = time.time()
        with self.session_scope() as session:
            existing = session.execute(
                sa.select(documents_table.c.created_at).where(
                    self._key_clause(collection, owner_id, item_id)
                )
            ).first()
            if existing is None:
                session.execute(
                    documents_table.insert().values(
                        collection=collection,
                        owner_id=owner_id,
                        id=item_id,
                        body=body,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                session.execute(
                    documents_table.update()
                    .where(self._key_clause(collection, owner_id, item_id))
                    .values(body=body, updated_at=now)
                )
        return copy.deepcopy(body)

    def update(
        self, collection: str, owner_id: str, item_id: str, patch: Mapping[str, Any]
    ) -> Optional[Document]:
        """Merge ``patch`` into an existing document and return the new version."""

        with self.session_scope() as session:
            row = session.execute(
                sa.select(documents_table.c.body).where(
                    self._key_clause(collection, owner_id, item_id)
                )
            ).first()
            if row is None:
                return None
            body = copy.deepcopy(row.body)
            body.update(copy.deepcopy(dict(patch)))
            session.execute(
                documents_table.update()
                .where(self._key_clause(collection, owner_id, item_id))
                .values(body=body, updated_at=time.time())
            )
        return body

    def delete(self, collection: str, owner_id: str, item_id: str) -> bool:
        with self.session_scope() as session:
            result = session.execute(
                documents_table.delete().where(self._key_clause(collection, owner_id, item_id))
            )
        return bool(result.rowcount)

    def _select(self, collection: str, owner_id: Optional[str]) -> List[Document]:
        stmt = sa.select(documents_table.c.body).where(documents_table.c.collection == collection)
        if owner_id is not None:
            stmt = stmt.where(documents_table.c.owner_id == owner_id)
        stmt = stmt.order_by(documents_table.c.created_at, documents_table.c.id)
        with self.session_scope() as session:
            rows = session.execute(stmt).all()
        return [copy.deepcopy(row.body) for row in rows]

    def query(
        self,
        collection: str,
        *,
        owner_id: Optional[str] = None,
        equals: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        items = [
            item for item in self._select(collection, owner_id) if _matches(item, equals, where)
        ]
        if limit is not None:
            items = items[: max(limit, 0)]
        return items

    def scan(
        self,
        collection: str,
        *,
        equals: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
    ) -> List[Document]:
        return self.query(collection, equals=equals, where=where)


def create_store(database_url: str, **engine_options: Any) -> SqlDocumentStore:
    """Create an engine for ``database_url`` and return a ready store."""

    engine = sa.create_engine(database_url, **engine_options)
    return SqlDocumentStore.from_engine(engine)


__all__ = [
    "PATIENTS",
    "APPOINTMENTS",
    "TIME_BLOCKS",
    "REPORTS",
    "TEMPLATES",
    "PORTAL_USERS",
    "Document",
    "DocumentStore",
    "SqlDocumentStore",
    "create_store",
    "documents_table",
    "metadata",
]
