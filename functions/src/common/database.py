# FILE: functions/src/common/database.py
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

# This module is the storage port every handler talks to.
# Handlers never touch the Firestore SDK directly, so the same logic runs
# against FirestoreStore in production and an in-memory store in tests.

logger = logging.getLogger(__name__)

# (field, operator, value), operators as accepted by Firestore: ==, !=, <, <=, >, >=, in, array_contains
QueryFilter = Tuple[str, str, Any]


class DocumentNotFoundError(Exception):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Document not found: {path}")
        self.path = path


class DocumentAlreadyExistsError(Exception):
    """Raised when a batched or transactional create hits an existing document."""

    def __init__(self, path: str):
        super().__init__(f"Document already exists: {path}")
        self.path = path


@dataclass
class StoredDocument:
    path: str
    id: str
    data: Dict[str, Any]

    @property
    def parent_path(self) -> str:
        return self.path.rsplit('/', 1)[0]


def doc_path(*segments: str) -> str:
    return '/'.join(segments)


class WriteBatch(ABC):
    """A group of writes that become visible together or not at all."""

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def create(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def update(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...


class Transaction(ABC):
    """Read-then-write unit of work. All reads must happen before the first write."""

    @abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def create(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def update(self, path: str, data: Dict[str, Any]) -> None: ...


class DocumentStore(ABC):
    @abstractmethod
    def new_id(self, collection_path: str) -> str: ...

    @abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def create(self, path: str, data: Dict[str, Any]) -> bool:
        """Write only if absent. Returns False (and writes nothing) when the document exists."""

    @abstractmethod
    def update(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def query(
        self,
        collection_path: str,
        filters: Sequence[QueryFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]: ...

    @abstractmethod
    def collection_group_query(
        self,
        collection_id: str,
        filters: Sequence[QueryFilter] = (),
        limit: Optional[int] = None,
    ) -> List[StoredDocument]: ...

    @abstractmethod
    def batch(self) -> WriteBatch: ...

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], Any]) -> Any:
        """Run fn inside a transaction, retrying on contention. Exceptions raised by fn abort it."""


class _FirestoreWriteBatch(WriteBatch):
    def __init__(self, client: firestore.Client):
        self._client = client
        self._batch = client.batch()

    def set(self, path, data):
        self._batch.set(self._client.document(path), data)

    def create(self, path, data):
        self._batch.create(self._client.document(path), data)

    def update(self, path, data):
        self._batch.update(self._client.document(path), data)

    def commit(self):
        try:
            self._batch.commit()
        except AlreadyExists as e:
            raise DocumentAlreadyExistsError(str(e)) from e
        except NotFound as e:
            raise DocumentNotFoundError(str(e)) from e


class _FirestoreTransaction(Transaction):
    def __init__(self, client: firestore.Client, transaction):
        self._client = client
        self._transaction = transaction

    def get(self, path):
        snapshot = self._client.document(path).get(transaction=self._transaction)
        return snapshot.to_dict() if snapshot.exists else None

    def set(self, path, data):
        self._transaction.set(self._client.document(path), data)

    def create(self, path, data):
        self._transaction.create(self._client.document(path), data)

    def update(self, path, data):
        self._transaction.update(self._client.document(path), data)


class FirestoreStore(DocumentStore):
    """DocumentStore backed by a google.cloud.firestore.Client."""

    def __init__(self, client: firestore.Client):
        self._client = client

    def new_id(self, collection_path):
        return self._client.collection(collection_path).document().id

    def get(self, path):
        snapshot = self._client.document(path).get()
        if not snapshot.exists:
            logger.debug(f"Document not found: {path}")
            return None
        return snapshot.to_dict()

    def set(self, path, data):
        self._client.document(path).set(data)

    def create(self, path, data):
        try:
            self._client.document(path).create(data)
            return True
        except AlreadyExists:
            logger.info(f"Create skipped, document already exists: {path}")
            return False

    def update(self, path, data):
        try:
            self._client.document(path).update(data)
        except NotFound as e:
            raise DocumentNotFoundError(path) from e

    def _apply_filters(self, query, filters):
        for field, op, value in filters:
            query = query.where(filter=FieldFilter(field, op, value))
        return query

    def query(self, collection_path, filters=(), order_by=None, descending=False, limit=None):
        query = self._apply_filters(self._client.collection(collection_path), filters)
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit:
            query = query.limit(limit)
        return [
            StoredDocument(path=snap.reference.path, id=snap.id, data=snap.to_dict())
            for snap in query.stream()
        ]

    def collection_group_query(self, collection_id, filters=(), limit=None):
        query = self._apply_filters(self._client.collection_group(collection_id), filters)
        if limit:
            query = query.limit(limit)
        return [
            StoredDocument(path=snap.reference.path, id=snap.id, data=snap.to_dict())
            for snap in query.stream()
        ]

    def batch(self):
        return _FirestoreWriteBatch(self._client)

    def run_transaction(self, fn):
        transaction = self._client.transaction()

        @firestore.transactional
        def _run_in_transaction(transaction):
            return fn(_FirestoreTransaction(self._client, transaction))

        return _run_in_transaction(transaction)
