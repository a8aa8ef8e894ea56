"""Indexed, versioned record store persisted in an Excel workbook.

Each collection is a worksheet with ``Key``/``Payload`` columns. The store
keeps an in-memory copy of every payload plus sorted secondary indices, so
reads never touch the workbook; the worksheets are rewritten from memory when
the store flushes.

All mutations go through :meth:`RecordStore.commit`, which validates a list of
staged operations, applies them, and persists the workbook. Either every
operation of a commit is visible afterwards or none is. Read-modify-write
sequences on one key are serialised with :meth:`RecordStore.locked`.
"""

from __future__ import annotations

import asyncio
import math
import weakref
from bisect import bisect_left, bisect_right, insort
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .errors import ConstraintViolation, NotFound, SchemaError
from .schema import IndexSpec, Schema


KEY_FIELD = "id"
SCHEMA_VERSION_META = "schema_version"
NEXT_KEY_META_PREFIX = "next_key:"

_MISSING = object()
_ADD = "add"
_PUT = "put"
_DELETE = "delete"


def index_key(value: Any) -> Optional[Tuple[int, Any]]:
    """Map a stored value onto a comparable index key.

    Numbers (booleans included) sort before strings. ``None`` and container
    values are not indexable and map to ``None``.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return None


class _Index:
    """Sorted ``(index_key, record_key)`` pairs for one index."""

    def __init__(self, spec: IndexSpec) -> None:
        self.spec = spec
        self.entries: List[Tuple[Tuple[int, Any], int]] = []

    def insert(self, record_key: int, record: Mapping[str, Any]) -> None:
        key = index_key(record.get(self.spec.key_path))
        if key is not None:
            insort(self.entries, (key, record_key))

    def remove(self, record_key: int, record: Mapping[str, Any]) -> None:
        key = index_key(record.get(self.spec.key_path))
        if key is None:
            return
        position = bisect_left(self.entries, (key, record_key))
        if position < len(self.entries) and self.entries[position] == (key, record_key):
            del self.entries[position]

    def equal(self, value: Any) -> List[int]:
        key = index_key(value)
        if key is None:
            return []
        lo = bisect_left(self.entries, (key,))
        hi = bisect_right(self.entries, (key, math.inf))
        return [record_key for _, record_key in self.entries[lo:hi]]

    def between(self, lower: Any = None, upper: Any = None) -> List[int]:
        lo = 0
        hi = len(self.entries)
        if lower is not None:
            lower_key = index_key(lower)
            if lower_key is None:
                raise ValueError(f"Unindexable lower bound: {lower!r}")
            lo = bisect_left(self.entries, (lower_key,))
        if upper is not None:
            upper_key = index_key(upper)
            if upper_key is None:
                raise ValueError(f"Unindexable upper bound: {upper!r}")
            hi = bisect_right(self.entries, (upper_key, math.inf))
        return [record_key for _, record_key in self.entries[lo:hi]]


@dataclass
class _Collection:
    """In-memory state of one collection."""

    name: str
    next_key: int = 1
    payloads: Dict[int, str] = field(default_factory=dict)
    decoded: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    indices: Dict[str, _Index] = field(default_factory=dict)

    def set(self, key: int, payload: Optional[str]) -> None:
        """Replace (or remove, when ``payload`` is ``None``) one record."""

        previous = self.decoded.pop(key, None)
        if previous is not None:
            for index in self.indices.values():
                index.remove(key, previous)
            del self.payloads[key]
        if payload is None:
            return
        record = data_manager.decode_payload(payload)
        self.payloads[key] = payload
        self.decoded[key] = record
        for index in self.indices.values():
            index.insert(key, record)


@dataclass
class _Operation:
    kind: str
    collection: str
    key: int
    payload: Optional[str] = None


class Batch:
    """Operations staged for a single atomic :meth:`RecordStore.commit`.

    ``add`` reserves the record key immediately so callers can reference the
    new record (for example from an audit entry) inside the same batch.
    """

    def __init__(self, store: "RecordStore") -> None:
        self._store = store
        self.operations: List[_Operation] = []

    def add(self, collection: str, record: Mapping[str, Any]) -> int:
        key = self._store._reserve_key(collection)
        payload = self._store._encode(record, key)
        self.operations.append(_Operation(_ADD, collection, key, payload))
        return key

    def put(self, collection: str, record: Mapping[str, Any]) -> int:
        key = record.get(KEY_FIELD)
        if not isinstance(key, int) or isinstance(key, bool):
            raise ValueError(f"put() requires an integer '{KEY_FIELD}' field, got {key!r}")
        self._store._collection(collection)
        payload = self._store._encode(record, key)
        self.operations.append(_Operation(_PUT, collection, key, payload))
        return key

    def delete(self, collection: str, key: int) -> None:
        self._store._collection(collection)
        self.operations.append(_Operation(_DELETE, collection, key))

    def __len__(self) -> int:
        return len(self.operations)


class RecordStore:
    """Embedded key-value store with auto-increment keys and secondary indices.

    Use :meth:`open` to construct an instance. Every public operation is a
    coroutine; records are plain mappings and callers always receive copies.
    """

    def __init__(self, workbook: Workbook, data_file: Optional[Path], *, autosave: bool = True) -> None:
        self.workbook = workbook
        self.data_file = data_file
        self.autosave = autosave
        self.version = 0
        self._collections: Dict[str, _Collection] = {}
        self._dirty: set[str] = set()
        self._write_lock = asyncio.Lock()
        self._key_locks: "weakref.WeakValueDictionary[Tuple[str, Any], asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def open(cls, schema: Schema, data_file: Optional[Path] = None, *, autosave: bool = True) -> "RecordStore":
        """Open (or create) a store and apply ``schema`` additively.

        Opening is idempotent: existing collections, indices and records are
        preserved, and only collections or indices missing from the workbook
        are created. Indices present in the workbook but absent from
        ``schema`` keep being maintained.

        Args:
            schema (Schema): Declared collections and indices.
            data_file (Path | None): Workbook location. ``None`` keeps the
                store purely in memory.
            autosave (bool): Persist the workbook after every commit.

        Returns:
            RecordStore: Ready-to-use store handle.

        Raises:
            SchemaError: If ``schema`` is older than the stored version or
                redefines an existing index.
            ConstraintViolation: If a new unique index conflicts with stored
                records.
        """

        path = Path(data_file).expanduser().resolve() if data_file is not None else None
        if path is not None and path.exists():
            workbook = await asyncio.to_thread(data_manager.open_workbook, path)
            log.info("Opened record store '%s'", path)
        else:
            workbook = data_manager.new_workbook()
            log.info("Created record store '%s'", path if path is not None else "<memory>")

        store = cls(workbook, path, autosave=autosave)
        store._load()
        changed = store._apply_schema(schema)
        if changed or (path is not None and not path.exists()):
            await store.flush()
        return store

    async def flush(self) -> None:
        """Write dirty collections to the workbook and save it to disk."""

        async with self._write_lock:
            await self._flush_locked()

    async def close(self) -> None:
        """Flush pending changes; the handle should not be used afterwards."""

        await self.flush()
        log.debug("Closed record store '%s'", self.data_file or "<memory>")

    def _load(self) -> None:
        meta = data_manager.read_meta(self.workbook)
        self.version = int(meta.get(SCHEMA_VERSION_META) or 0)

        for name, value in meta.items():
            if not name.startswith(NEXT_KEY_META_PREFIX):
                continue
            collection_name = name[len(NEXT_KEY_META_PREFIX):]
            collection = _Collection(name=collection_name, next_key=int(value))
            if collection_name in self.workbook.sheetnames:
                sheet = self.workbook[collection_name]
                for _, row in data_manager.iter_rows(sheet):
                    key, payload = int(row[0]), row[1]
                    collection.set(key, payload)
                    collection.next_key = max(collection.next_key, key + 1)
            self._collections[collection_name] = collection

        for row in data_manager.read_index_rows(self.workbook):
            collection = self._collections.get(row["collection"])
            if collection is None:
                raise SchemaError(
                    f"Index '{row['index']}' refers to unknown collection '{row['collection']}'",
                    entity=row["collection"],
                )
            index = _Index(IndexSpec(name=row["index"], key_path=row["key_path"], unique=row["unique"]))
            for key, record in collection.decoded.items():
                index.insert(key, record)
            collection.indices[index.spec.name] = index

        log.debug(
            "Loaded %d collections at schema version %d",
            len(self._collections),
            self.version,
        )

    def _apply_schema(self, schema: Schema) -> bool:
        if schema.version < self.version:
            log.error(
                "Refusing to open store at schema version %d with older schema %d",
                self.version,
                schema.version,
            )
            raise SchemaError(
                f"Store is at schema version {self.version}; cannot open with version {schema.version}"
            )

        changed = schema.version != self.version
        for spec in schema.collections.values():
            collection = self._collections.get(spec.name)
            if collection is None:
                collection = _Collection(name=spec.name)
                self._collections[spec.name] = collection
                data_manager.ensure_sheet(self.workbook, spec.name, data_manager.COLLECTION_COLUMNS)
                self._dirty.add(spec.name)
                changed = True
                log.info("Created collection '%s'", spec.name)

            for index_spec in spec.indices:
                existing = collection.indices.get(index_spec.name)
                if existing is not None:
                    if existing.spec != index_spec:
                        raise SchemaError(
                            f"Index '{index_spec.name}' on '{spec.name}' cannot be redefined",
                            entity=spec.name,
                            field=index_spec.name,
                        )
                    continue
                index = _Index(index_spec)
                for key, record in collection.decoded.items():
                    index.insert(key, record)
                if index_spec.unique:
                    self._check_unique_index(spec.name, index)
                collection.indices[index_spec.name] = index
                data_manager.append_index_row(
                    self.workbook,
                    collection=spec.name,
                    index=index_spec.name,
                    key_path=index_spec.key_path,
                    unique=index_spec.unique,
                    version=schema.version,
                )
                changed = True
                log.info("Created index '%s' on collection '%s'", index_spec.name, spec.name)

        if schema.version > self.version:
            log.info("Upgraded store schema from version %d to %d", self.version, schema.version)
            self.version = schema.version
        return changed

    @staticmethod
    def _check_unique_index(collection: str, index: _Index) -> None:
        for (left_value, left_key), (right_value, right_key) in zip(index.entries, index.entries[1:]):
            if left_value == right_value:
                log.error(
                    "Cannot create unique index '%s' on '%s': keys %d and %d share %r",
                    index.spec.name,
                    collection,
                    left_key,
                    right_key,
                    left_value[1],
                )
                raise ConstraintViolation(collection, index.spec.name, left_value[1], entity_id=right_key)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def collection_names(self) -> List[str]:
        return sorted(self._collections)

    def index_names(self, collection: str) -> List[str]:
        return sorted(self._collection(collection).indices)

    def index_spec(self, collection: str, index: str) -> IndexSpec:
        return self._index(collection, index).spec

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, key: int) -> Dict[str, Any]:
        """Return a copy of the record stored under ``key``.

        Raises:
            NotFound: If ``key`` is absent from ``collection``.
        """

        await asyncio.sleep(0)
        state = self._collection(collection)
        payload = state.payloads.get(key)
        if payload is None:
            log.debug("Lookup failed for %s key %r", collection, key)
            raise NotFound(collection, key)
        return data_manager.decode_payload(payload)

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        """Return copies of every record in ``collection`` in key order."""

        await asyncio.sleep(0)
        state = self._collection(collection)
        return [data_manager.decode_payload(state.payloads[key]) for key in sorted(state.payloads)]

    async def get_by_index(
        self,
        collection: str,
        index: str,
        value: Any = _MISSING,
        *,
        lower: Any = None,
        upper: Any = None,
    ) -> List[Dict[str, Any]]:
        """Look records up through a secondary index.

        Pass ``value`` for an equality lookup, or ``lower``/``upper`` for an
        inclusive range (either bound may be omitted). Records whose indexed
        field is missing or ``None`` are never returned. Results are ordered
        by index value, then key.
        """

        await asyncio.sleep(0)
        state = self._collection(collection)
        secondary = self._index(collection, index)
        if value is not _MISSING:
            keys = secondary.equal(data_manager.to_storable(value))
        else:
            keys = secondary.between(
                data_manager.to_storable(lower) if lower is not None else None,
                data_manager.to_storable(upper) if upper is not None else None,
            )
        return [data_manager.decode_payload(state.payloads[key]) for key in keys]

    async def count(self, collection: str) -> int:
        await asyncio.sleep(0)
        return len(self._collection(collection).payloads)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, collection: str, record: Mapping[str, Any]) -> int:
        """Insert ``record`` under a newly assigned key and return the key.

        Raises:
            ConstraintViolation: If a unique index would hold a duplicate.
        """

        batch = self.new_batch()
        key = batch.add(collection, record)
        await self.commit(batch)
        return key

    async def put(self, collection: str, record: Mapping[str, Any]) -> None:
        """Replace the stored record whose key is ``record['id']`` wholesale.

        Raises:
            NotFound: If no record exists under that key.
            ConstraintViolation: If a unique index would hold a duplicate.
        """

        batch = self.new_batch()
        batch.put(collection, record)
        await self.commit(batch)

    async def delete(self, collection: str, key: int) -> None:
        """Remove the record stored under ``key``.

        Raises:
            NotFound: If no record exists under ``key``.
        """

        batch = self.new_batch()
        batch.delete(collection, key)
        await self.commit(batch)

    def new_batch(self) -> Batch:
        return Batch(self)

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[Batch]:
        """Stage operations and commit them together when the block exits.

        Nothing is committed if the block raises.
        """

        staged = self.new_batch()
        yield staged
        if staged.operations:
            await self.commit(staged)

    @asynccontextmanager
    async def locked(self, collection: str, key: Any) -> AsyncIterator[None]:
        """Hold the per-key lock for a read-modify-write sequence.

        The lock is not re-entrant; code running inside the block must not
        try to take the same lock again.
        """

        lock_id = (collection, key)
        lock = self._key_locks.get(lock_id)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[lock_id] = lock
        async with lock:
            yield

    async def commit(self, batch: Batch) -> None:
        """Validate and apply ``batch`` atomically, then persist.

        Raises:
            NotFound: If a put or delete targets a missing key.
            ConstraintViolation: If the batch would duplicate a unique value.
        """

        async with self._write_lock:
            final = self._validate(batch)

            undo: Dict[Tuple[str, int], Optional[str]] = {}
            for (collection, key), payload in final.items():
                state = self._collections[collection]
                undo[(collection, key)] = state.payloads.get(key)
                state.set(key, payload)
                self._dirty.add(collection)

            try:
                await self._flush_locked(persist=self.autosave and self.data_file is not None)
            except Exception:
                log.error("Persisting batch of %d operations failed; rolling back", len(batch))
                for (collection, key), payload in undo.items():
                    self._collections[collection].set(key, payload)
                    self._dirty.add(collection)
                raise

        log.debug("Committed batch of %d operations", len(batch))

    def _validate(self, batch: Batch) -> Dict[Tuple[str, int], Optional[str]]:
        final: Dict[Tuple[str, int], Optional[str]] = {}
        for operation in batch.operations:
            state = self._collection(operation.collection)
            slot = (operation.collection, operation.key)
            if slot in final:
                exists = final[slot] is not None
            else:
                exists = operation.key in state.payloads
            if operation.kind == _ADD:
                if exists:
                    raise ConstraintViolation(operation.collection, KEY_FIELD, operation.key)
            elif not exists:
                log.warning("%s of missing %s key %r", operation.kind, operation.collection, operation.key)
                raise NotFound(operation.collection, operation.key)
            final[slot] = operation.payload

        self._validate_unique(final)
        return final

    def _validate_unique(self, final: Mapping[Tuple[str, int], Optional[str]]) -> None:
        touched: Dict[str, Dict[int, Optional[Dict[str, Any]]]] = {}
        for (collection, key), payload in final.items():
            touched.setdefault(collection, {})[key] = (
                data_manager.decode_payload(payload) if payload is not None else None
            )

        for collection, records in touched.items():
            state = self._collections[collection]
            for index in state.indices.values():
                if not index.spec.unique:
                    continue
                seen: Dict[Tuple[int, Any], int] = {}
                for key, record in records.items():
                    if record is None:
                        continue
                    value = record.get(index.spec.key_path)
                    value_key = index_key(value)
                    if value_key is None:
                        continue
                    holders = [other for other in index.equal(value) if other not in records]
                    if holders or value_key in seen:
                        log.warning(
                            "Unique index '%s' on '%s' already holds %r",
                            index.spec.name,
                            collection,
                            value,
                        )
                        raise ConstraintViolation(collection, index.spec.name, value, entity_id=key)
                    seen[value_key] = key

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _collection(self, name: str) -> _Collection:
        try:
            return self._collections[name]
        except KeyError as exc:
            raise SchemaError(f"Unknown collection '{name}'", entity=name) from exc

    def _index(self, collection: str, index: str) -> _Index:
        try:
            return self._collection(collection).indices[index]
        except KeyError as exc:
            raise SchemaError(f"Unknown index '{index}' on '{collection}'", entity=collection, field=index) from exc

    def _reserve_key(self, collection: str) -> int:
        state = self._collection(collection)
        key = state.next_key
        state.next_key += 1
        return key

    @staticmethod
    def _encode(record: Mapping[str, Any], key: int) -> str:
        stored = dict(record)
        stored[KEY_FIELD] = key
        return data_manager.encode_payload(stored)

    def _sync_sheets(self) -> None:
        data_manager.write_meta(self.workbook, SCHEMA_VERSION_META, self.version)
        for name, state in self._collections.items():
            data_manager.write_meta(self.workbook, f"{NEXT_KEY_META_PREFIX}{name}", state.next_key)

        for name in sorted(self._dirty):
            state = self._collections[name]
            sheet: Worksheet = data_manager.ensure_sheet(self.workbook, name, data_manager.COLLECTION_COLUMNS)
            if sheet.max_row > 1:
                sheet.delete_rows(2, sheet.max_row - 1)
            for key in sorted(state.payloads):
                sheet.append([key, state.payloads[key]])
        self._dirty.clear()

    async def _flush_locked(self, *, persist: bool = True) -> None:
        if not persist:
            return
        self._sync_sheets()
        if self.data_file is not None:
            await asyncio.to_thread(data_manager.save_workbook, self.workbook, self.data_file)
            log.debug("Saved record store '%s'", self.data_file)


__all__ = ["RecordStore", "Batch", "KEY_FIELD", "index_key"]
