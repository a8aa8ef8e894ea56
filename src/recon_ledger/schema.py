"""Schema registry for the record store.

Each schema version only adds collections or indices to the previous one.
:func:`build_schema` folds the history up to a requested version into a
:class:`Schema` that :meth:`RecordStore.open` applies additively.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .constants import SCHEMA_VERSION, CollectionName


@dataclass(frozen=True)
class IndexSpec:
    """Secondary index over a single record field."""

    name: str
    key_path: str
    unique: bool = False


@dataclass(frozen=True)
class CollectionSpec:
    """A named collection with an auto-increment key and its indices."""

    name: str
    indices: tuple[IndexSpec, ...] = ()

    def index(self, name: str) -> IndexSpec:
        for spec in self.indices:
            if spec.name == name:
                return spec
        raise KeyError(f"Unknown index '{name}' on collection '{self.name}'")


@dataclass(frozen=True)
class Schema:
    """Versioned set of collection declarations."""

    version: int
    collections: Mapping[str, CollectionSpec] = field(default_factory=dict)

    def collection(self, name: str) -> CollectionSpec:
        try:
            return self.collections[name]
        except KeyError as exc:
            raise KeyError(f"Unknown collection '{name}'") from exc


def _idx(name: str, *, unique: bool = False) -> IndexSpec:
    return IndexSpec(name=name, key_path=name, unique=unique)


# version -> {collection: indices introduced in that version}
SCHEMA_HISTORY: Mapping[int, Mapping[str, Sequence[IndexSpec]]] = {
    1: {
        CollectionName.SALES_ENTRIES.value: (
            _idx("date"),
            _idx("driver_id"),
            _idx("submitted_by"),
            _idx("is_submitted"),
        ),
        CollectionName.STOCK_ENTRIES.value: (
            _idx("date"),
            _idx("driver_id"),
            _idx("packer_id"),
            _idx("submitted_by"),
            _idx("is_submitted"),
        ),
        CollectionName.SETTLEMENTS.value: (
            _idx("date"),
            _idx("sales_entry_id"),
            _idx("is_settled"),
        ),
        CollectionName.AUDIT_RECORDS.value: (
            _idx("entity_type"),
            _idx("entity_id"),
            _idx("changed_by"),
            _idx("changed_at"),
        ),
        CollectionName.NOTIFICATIONS.value: (
            _idx("user_id"),
            _idx("is_read"),
            _idx("created_at"),
        ),
        CollectionName.USER_ACCOUNTS.value: (
            _idx("phone", unique=True),
            _idx("email"),
            _idx("role"),
        ),
        CollectionName.STAFF_PROFILES.value: (
            _idx("email", unique=True),
        ),
    },
    2: {
        CollectionName.SETTLEMENT_PAYMENTS.value: (
            _idx("settlement_id"),
            _idx("paid_at"),
        ),
        CollectionName.STAFF_PROFILES.value: (
            _idx("role"),
        ),
    },
}


def build_schema(version: int = SCHEMA_VERSION) -> Schema:
    """Accumulate :data:`SCHEMA_HISTORY` up to and including ``version``.

    Args:
        version (int): Target schema version. Must be declared in the history.

    Returns:
        Schema: Collections and indices known at ``version``.

    Raises:
        ValueError: If ``version`` is not a declared schema version.
    """

    if version not in SCHEMA_HISTORY:
        raise ValueError(f"Unknown schema version: {version}")

    merged: dict[str, list[IndexSpec]] = {}
    for step in sorted(SCHEMA_HISTORY):
        if step > version:
            break
        for collection, indices in SCHEMA_HISTORY[step].items():
            merged.setdefault(collection, []).extend(indices)

    return Schema(
        version=version,
        collections={
            name: CollectionSpec(name=name, indices=tuple(indices))
            for name, indices in merged.items()
        },
    )


__all__ = ["IndexSpec", "CollectionSpec", "Schema", "SCHEMA_HISTORY", "build_schema"]
