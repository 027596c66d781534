"""
In-memory DocumentStore used by the unit tests.

Documents live in a dict keyed by slash-separated path. Transactions are
optimistic: every read records the document version, and commit fails with
TransactionConflict if any of those versions moved, after which
run_transaction re-runs the function like the Firestore client does.
Batches validate every write before applying any of them.
"""
import copy
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from common.database import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    DocumentStore,
    QueryFilter,
    StoredDocument,
    Transaction,
    WriteBatch,
)

MAX_TRANSACTION_ATTEMPTS = 5


class TransactionConflict(Exception):
    pass


class StoreUnavailable(Exception):
    """Raised by batch commits while MemoryStore.fail_batch_commits is set."""


_Write = Tuple[str, str, Dict[str, Any]]


def _matches(data: Dict[str, Any], field: str, op: str, value: Any) -> bool:
    # Like Firestore, a filter never matches a document that lacks the field.
    if field not in data:
        return False
    actual = data[field]
    if op == '==':
        return actual == value
    if op == '!=':
        return actual != value
    if op == 'in':
        return actual in value
    if op == 'array_contains':
        return isinstance(actual, list) and value in actual
    if actual is None or value is None:
        return False
    try:
        if op == '<':
            return actual < value
        if op == '<=':
            return actual <= value
        if op == '>':
            return actual > value
        if op == '>=':
            return actual >= value
    except TypeError:
        return False
    raise ValueError(f"Unsupported operator: {op}")


class _MemoryWriteBatch(WriteBatch):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._writes: List[_Write] = []

    def set(self, path, data):
        self._writes.append(('set', path, data))

    def create(self, path, data):
        self._writes.append(('create', path, data))

    def update(self, path, data):
        self._writes.append(('update', path, data))

    def commit(self):
        if self._store.fail_batch_commits:
            raise StoreUnavailable("batch commit failed")
        self._store._apply_writes(self._writes)
        self._store.committed_batches += 1


class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.reads: Dict[str, int] = {}
        self.writes: List[_Write] = []

    def get(self, path):
        if self.writes:
            raise RuntimeError("Transaction reads must happen before writes")
        with self._store._lock:
            self.reads[path] = self._store._versions.get(path, 0)
            data = self._store._docs.get(path)
            return copy.deepcopy(data) if data is not None else None

    def set(self, path, data):
        self.writes.append(('set', path, data))

    def create(self, path, data):
        self.writes.append(('create', path, data))

    def update(self, path, data):
        self.writes.append(('update', path, data))


class MemoryStore(DocumentStore):
    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self.fail_batch_commits = False
        self.committed_batches = 0
        self.transaction_attempts = 0

    # -- helpers for assertions --

    def exists(self, path: str) -> bool:
        return path in self._docs

    def paths(self, prefix: str = '') -> List[str]:
        return sorted(p for p in self._docs if p.startswith(prefix))

    def documents(self, collection_path: str) -> List[Dict[str, Any]]:
        return [doc.data for doc in self.query(collection_path)]

    # -- DocumentStore --

    def new_id(self, collection_path):
        return uuid.uuid4().hex[:20]

    def get(self, path):
        with self._lock:
            data = self._docs.get(path)
            return copy.deepcopy(data) if data is not None else None

    def set(self, path, data):
        self._apply_writes([('set', path, data)])

    def create(self, path, data):
        try:
            self._apply_writes([('create', path, data)])
        except DocumentAlreadyExistsError:
            return False
        return True

    def update(self, path, data):
        self._apply_writes([('update', path, data)])

    def _select(self, predicate: Callable[[str], bool], filters: Sequence[QueryFilter]) -> List[StoredDocument]:
        with self._lock:
            results = []
            for path, data in self._docs.items():
                if not predicate(path):
                    continue
                if all(_matches(data, field, op, value) for field, op, value in filters):
                    results.append(StoredDocument(path=path, id=path.rsplit('/', 1)[1], data=copy.deepcopy(data)))
        return results

    def query(self, collection_path, filters=(), order_by=None, descending=False, limit=None):
        results = self._select(lambda path: path.rsplit('/', 1)[0] == collection_path, filters)
        if order_by:
            results = [doc for doc in results if order_by in doc.data]
            results.sort(key=lambda doc: (doc.data[order_by] is not None, doc.data[order_by]), reverse=descending)
        else:
            results.sort(key=lambda doc: doc.id)
        return results[:limit] if limit else results

    def collection_group_query(self, collection_id, filters=(), limit=None):
        def in_group(path):
            segments = path.split('/')
            return len(segments) >= 2 and segments[-2] == collection_id
        results = sorted(self._select(in_group, filters), key=lambda doc: doc.path)
        return results[:limit] if limit else results

    def batch(self):
        return _MemoryWriteBatch(self)

    def run_transaction(self, fn: Callable[[Transaction], Any]) -> Any:
        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            self.transaction_attempts += 1
            transaction = _MemoryTransaction(self)
            result = fn(transaction)
            try:
                self._commit_transaction(transaction)
            except TransactionConflict:
                continue
            return result
        raise TransactionConflict(f"Transaction aborted after {MAX_TRANSACTION_ATTEMPTS} attempts")

    def _commit_transaction(self, transaction: _MemoryTransaction) -> None:
        with self._lock:
            for path, version in transaction.reads.items():
                if self._versions.get(path, 0) != version:
                    raise TransactionConflict(path)
            self._apply_writes(transaction.writes)

    def _apply_writes(self, writes: Sequence[_Write]) -> None:
        with self._lock:
            staged: Dict[str, Optional[Dict[str, Any]]] = {}

            def current(path):
                return staged[path] if path in staged else self._docs.get(path)

            for op, path, data in writes:
                existing = current(path)
                if op == 'create':
                    if existing is not None:
                        raise DocumentAlreadyExistsError(path)
                    staged[path] = copy.deepcopy(data)
                elif op == 'update':
                    if existing is None:
                        raise DocumentNotFoundError(path)
                    staged[path] = {**existing, **copy.deepcopy(data)}
                else:
                    staged[path] = copy.deepcopy(data)

            for path, data in staged.items():
                self._docs[path] = data
                self._versions[path] = self._versions.get(path, 0) + 1
