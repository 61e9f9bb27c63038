"""Per-device JSON documents with whole-document read-modify-write transactions.

Every backend exposes the same two calls:

``get(device_id)``
    Non-transactional read of the current document, ``None`` when absent.

``transaction(device_id, mutate)``
    Runs ``mutate(current)`` against a private copy of the document and
    persists what it returns atomically. ``mutate`` returns a
    ``(result, new_document)`` pair; a ``None`` document means nothing is
    written. It may run more than once when a concurrent writer wins, so it
    must only depend on ``current``.
"""

from __future__ import annotations

import copy
import logging
import random
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, TypeVar

from google.api_core.exceptions import GoogleAPICallError
from sqlalchemy import Column, Integer, JSON, String, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine

from .auth import firebase_app
from .errors import StorageError

log = logging.getLogger(__name__)

T = TypeVar("T")
Document = dict[str, Any]
Mutation = Callable[[Optional[Document]], Tuple[T, Optional[Document]]]

COLLECTION = "webhooks"


class DocumentStore:
    def get(self, device_id: str) -> Optional[Document]:
        raise NotImplementedError

    def transaction(self, device_id: str, mutate: Mutation) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        pass


class WebhookDocument(SQLModel, table=True):
    __tablename__ = COLLECTION

    device_id: str = Field(sa_column=Column(String, primary_key=True))
    data: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    version: int = Field(sa_column=Column(Integer, nullable=False, default=1))


class SQLDocumentStore(DocumentStore):
    """SQLite-backed documents with optimistic, version-checked writes."""

    def __init__(self, db_path: str, max_attempts: int = 25) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = path
        self.max_attempts = max(1, max_attempts)
        self.engine: Engine = create_engine(
            f"sqlite:///{path}",
            echo=False,
            connect_args={"timeout": 30},
        )
        SQLModel.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def get(self, device_id: str) -> Optional[Document]:
        try:
            with Session(self.engine) as session:
                row = session.get(WebhookDocument, device_id)
                return copy.deepcopy(row.data) if row else None
        except SQLAlchemyError as exc:
            raise StorageError(f"read failed for {device_id}: {exc}") from exc

    def transaction(self, device_id: str, mutate: Mutation) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with Session(self.engine) as session:
                    row = session.get(WebhookDocument, device_id)
                    version = row.version if row else None
                    current = copy.deepcopy(row.data) if row else None
                    result, new_doc = mutate(current)
                    if new_doc is None:
                        return result
                    if row is None:
                        session.add(
                            WebhookDocument(device_id=device_id, data=new_doc, version=1)
                        )
                        session.commit()
                        return result
                    outcome = session.exec(
                        update(WebhookDocument)
                        .where(WebhookDocument.device_id == device_id)
                        .where(WebhookDocument.version == version)
                        .values(data=new_doc, version=version + 1)
                    )
                    if outcome.rowcount == 1:
                        session.commit()
                        return result
                    session.rollback()
            except (IntegrityError, OperationalError) as exc:
                log.debug("write conflict on %s (attempt %d): %s", device_id, attempt, exc)
            except SQLAlchemyError as exc:
                raise StorageError(f"transaction failed for {device_id}: {exc}") from exc
            time.sleep(random.uniform(0, min(0.01 * attempt, 0.2)))
        raise StorageError(
            f"transaction on {device_id} gave up after {self.max_attempts} conflicting attempts"
        )


class MemoryDocumentStore(DocumentStore):
    """In-process documents; one lock serialises every transaction."""

    def __init__(self) -> None:
        self._docs: dict[str, Document] = {}
        self._lock = threading.Lock()

    def get(self, device_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._docs.get(device_id)
            return copy.deepcopy(doc) if doc is not None else None

    def transaction(self, device_id: str, mutate: Mutation) -> Any:
        with self._lock:
            current = self._docs.get(device_id)
            result, new_doc = mutate(copy.deepcopy(current) if current is not None else None)
            if new_doc is not None:
                self._docs[device_id] = copy.deepcopy(new_doc)
            return result


class FirestoreDocumentStore(DocumentStore):
    """Documents in a Firestore collection, mutated with the SDK's transaction retry."""

    def __init__(self, client, collection: str = COLLECTION) -> None:
        self._client = client
        self._collection = collection

    def _ref(self, device_id: str):
        return self._client.collection(self._collection).document(device_id)

    def get(self, device_id: str) -> Optional[Document]:
        try:
            snapshot = self._ref(device_id).get()
        except GoogleAPICallError as exc:
            raise StorageError(f"read failed for {device_id}: {exc}") from exc
        return snapshot.to_dict() if snapshot.exists else None

    def transaction(self, device_id: str, mutate: Mutation) -> Any:
        from firebase_admin import firestore

        ref = self._ref(device_id)

        @firestore.transactional
        def _run(txn):
            snapshot = ref.get(transaction=txn)
            current = snapshot.to_dict() if snapshot.exists else None
            result, new_doc = mutate(current)
            if new_doc is not None:
                txn.set(ref, new_doc)
            return result

        try:
            return _run(self._client.transaction())
        except GoogleAPICallError as exc:
            raise StorageError(f"transaction failed for {device_id}: {exc}") from exc


def build_document_store(backend: str, db_path: str, max_attempts: int = 25) -> DocumentStore:
    backend = (backend or "sqlite").strip().lower()
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "firestore":
        from firebase_admin import firestore

        return FirestoreDocumentStore(firestore.client(app=firebase_app()))
    if backend == "sqlite":
        return SQLDocumentStore(db_path, max_attempts=max_attempts)
    raise ValueError(f"unknown STORE_BACKEND {backend!r}")
