"""
Record model for possync.

This module defines the data shapes shared by every component:
- Tenant: the active store
- Record: the generic synchronized unit (id, fields, last_updated)
- RecordKind: per-collection rules (required fields, mutable whitelist)
- SyncEnvelope: computed view of a record plus its pending-write flag
- IdGenerator: wall-clock derived id assignment

Invariants:
    - Record ids are unique within one tenant collection
    - Locally generated ids never repeat within a process
    - Category id=1 is the protected "all items" sentinel
    - update() merges only whitelisted mutable fields

How to change safely:
    - Add new mutable fields to the kind's whitelist, never remove them
    - Keep field names identical to the remote documents (camelCase)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

PRODUCTS = "products"
CATEGORIES = "categories"
MEMBERS = "members"
SALES = "sales"

COLLECTIONS = (CATEGORIES, PRODUCTS, MEMBERS, SALES)

ALL_ITEMS_CATEGORY_ID = 1


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class Origin(Enum):
    """Where a record was first seen."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class Tenant:
    """The active store.

    Attributes:
        id: Tenant identifier (remote store id)
        name: Store display name
        address: Store address
        phone: Store phone number
    """

    id: str
    name: str = ""
    address: str = ""
    phone: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "address": self.address, "phone": self.phone}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tenant:
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            address=data.get("address") or "",
            phone=data.get("phone") or "",
        )


@dataclass
class Record:
    """One persisted entity of any collection.

    Attributes:
        id: Record identifier, unique within its collection
        fields: Field values (camelCase, as stored remotely)
        last_updated: Last local or remote mutation time (Unix ms)
    """

    id: int
    fields: dict[str, Any] = field(default_factory=dict)
    last_updated: int = 0

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_document(self) -> dict[str, Any]:
        """Remote document form: fields plus id and lastUpdated."""
        doc = dict(self.fields)
        doc["id"] = self.id
        doc["lastUpdated"] = self.last_updated
        return doc

    @classmethod
    def from_document(cls, doc_id: str | int, data: dict[str, Any]) -> Record:
        """Build a record from a remote document.

        The id embedded in the document wins over the document key. A
        document without a numeric lastUpdated gets 0, so delivering it again
        is a no-op.
        """
        fields = dict(data)
        embedded = fields.pop("id", None)
        last_updated = fields.pop("lastUpdated", None)
        record_id = int(embedded) if embedded not in (None, "") else int(doc_id)
        if not isinstance(last_updated, (int, float)) or isinstance(last_updated, bool):
            last_updated = 0
        return cls(id=record_id, fields=fields, last_updated=int(last_updated))

    def copy(self) -> Record:
        return Record(id=self.id, fields=dict(self.fields), last_updated=self.last_updated)


@dataclass(frozen=True)
class SyncEnvelope:
    """A record together with its synchronization state."""

    record: Record
    origin: Origin
    pending_write: bool


Validator = Callable[[dict[str, Any]], list[str]]


@dataclass(frozen=True)
class RecordKind:
    """Rules for one collection.

    Attributes:
        collection: Collection name (remote and local)
        required: Fields that must be present on creation
        mutable: Whitelist of fields update() may change
        defaults: Values filled in on creation when absent
        protected_ids: Ids that can never be deleted
        validator: Extra validation returning a list of errors
    """

    collection: str
    required: tuple[str, ...] = ()
    mutable: frozenset[str] = frozenset()
    defaults: tuple[tuple[str, Any], ...] = ()
    protected_ids: frozenset[int] = frozenset()
    validator: Validator | None = None

    def validate_fields(self, fields: dict[str, Any]) -> tuple[bool, list[str]]:
        """Validate a creation payload.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = [
            f"Missing required field: {name}"
            for name in self.required
            if fields.get(name) in (None, "")
        ]
        if self.validator is not None:
            errors.extend(self.validator(fields))
        return len(errors) == 0, errors

    def with_defaults(self, fields: dict[str, Any]) -> dict[str, Any]:
        merged = {name: value for name, value in self.defaults}
        merged.update(fields)
        return merged

    def merge(self, current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
        """Apply a patch through the mutable-field whitelist.

        Fields outside the whitelist are ignored, so a stale patch cannot
        resurrect a field that was deliberately dropped.
        """
        merged = dict(current)
        for name, value in patch.items():
            if name in self.mutable:
                merged[name] = value
        return merged

    def is_protected(self, record_id: int) -> bool:
        return record_id in self.protected_ids


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _validate_product(fields: dict[str, Any]) -> list[str]:
    errors = []
    price = fields.get("price")
    is_number = isinstance(price, (int, float)) and not isinstance(price, bool)
    if price is not None and (not is_number or price < 0):
        errors.append("price must be a non-negative number")
    if not _is_non_negative_int(fields.get("stock", 0)):
        errors.append("stock must be a non-negative integer")
    return errors


def _validate_sale(fields: dict[str, Any]) -> list[str]:
    items = fields.get("items")
    if not items:
        return ["Sale has no items"]
    if not isinstance(items, list):
        return ["items must be a list"]
    errors = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(f"items[{index}] must be an object")
            continue
        if item.get("productId") is None:
            errors.append(f"items[{index}] is missing productId")
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            errors.append(f"items[{index}] quantity must be a positive integer")
    return errors


PRODUCT_KIND = RecordKind(
    collection=PRODUCTS,
    required=("name", "price"),
    mutable=frozenset({"name", "price", "stock", "categoryId", "barcode", "cost", "image", "icon"}),
    defaults=(("stock", 0),),
    validator=_validate_product,
)

CATEGORY_KIND = RecordKind(
    collection=CATEGORIES,
    required=("name",),
    mutable=frozenset({"name", "icon", "color"}),
    defaults=(("protected", False),),
    protected_ids=frozenset({ALL_ITEMS_CATEGORY_ID}),
)

MEMBER_KIND = RecordKind(
    collection=MEMBERS,
    required=("name", "phone"),
    mutable=frozenset({"name", "phone", "points", "email", "note"}),
    defaults=(("points", 0),),
)

SALE_KIND = RecordKind(
    collection=SALES,
    required=("items",),
    mutable=frozenset({"status", "note"}),
    validator=_validate_sale,
)

KINDS: dict[str, RecordKind] = {
    PRODUCTS: PRODUCT_KIND,
    CATEGORIES: CATEGORY_KIND,
    MEMBERS: MEMBER_KIND,
    SALES: SALE_KIND,
}


def all_items_category() -> Record:
    """The protected sentinel category."""
    return Record(
        id=ALL_ITEMS_CATEGORY_ID,
        fields={"name": "ทั้งหมด", "icon": "fa-border-all", "color": "purple", "protected": True},
        last_updated=now_ms(),
    )


def default_categories() -> list[Record]:
    """Categories a brand new tenant starts with."""
    ts = now_ms()
    return [
        all_items_category(),
        Record(id=2, fields={"name": "เครื่องดื่ม", "icon": "fa-mug-hot", "color": "blue", "protected": False}, last_updated=ts),
        Record(id=3, fields={"name": "อาหาร", "icon": "fa-utensils", "color": "green", "protected": False}, last_updated=ts),
        Record(id=4, fields={"name": "ของหวาน", "icon": "fa-ice-cream", "color": "pink", "protected": False}, last_updated=ts),
    ]


def default_settings() -> dict[str, Any]:
    """Store settings a brand new tenant starts with."""
    return {
        "storeName": "SP24 POS",
        "storeAddress": "",
        "storePhone": "",
        "tax": 7,
        "currency": "฿",
        "memberDiscount": 5,
        "pointRate": 100,
        "autoLockMinutes": 10,
        "receipt": {
            "showPhone": True,
            "showLogo": True,
            "footerMessage": "ขอบคุณที่ใช้บริการ",
        },
    }


class IdGenerator:
    """Wall-clock derived record ids.

    Ids are Unix microseconds. If the clock has not advanced since the last
    id (or went backwards), the previous id plus one is returned, so ids from
    one generator are strictly increasing.
    """

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or time.time_ns
        self._last = 0

    def next_id(self) -> int:
        candidate = self._clock() // 1000
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate
