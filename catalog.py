"""
Catalog store: product management, the shop view and the stock primitives
the order engine reserves inventory with.
"""
import threading
from contextlib import contextmanager
from typing import Any, Dict, Hashable, Iterator, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import create_document, get_documents, to_decimal128, to_object_id, utcnow
from errors import Forbidden, InsufficientStock, ProductNotFound, ServiceUnavailable, ValidationFailed
from logging_config import get_logger
from schemas import PLACEHOLDER_IMAGE, Identity, ProductCreate, ProductPublic, ProductUpdate

logger = get_logger(__name__)


class KeyedLocks:
    """One mutex per key, created on demand and dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List[Any]] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=timeout):
                raise ServiceUnavailable("Timed out waiting for stock lock", product_id=str(key))
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


stock_locks = KeyedLocks()


def _load(db: Database, product_id: str) -> Dict[str, Any]:
    oid = to_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise ProductNotFound(product_id)
    return doc


def _load_owned(db: Database, identity: Identity, product_id: str, action: str) -> Dict[str, Any]:
    doc = _load(db, product_id)
    if doc["owner_id"] != identity.id:
        raise Forbidden(f"Not authorized to {action} this product")
    return doc


def _to_storage(data: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(data)
    if doc.get("price") is not None:
        doc["price"] = to_decimal128(doc["price"])
    if doc.get("category") is not None:
        doc["category"] = doc["category"].value
    return doc


# Management surface


def create_product(db: Database, identity: Identity, data: ProductCreate) -> ProductPublic:
    doc = _to_storage(data.model_dump())
    doc["image_url"] = doc.get("image_url") or PLACEHOLDER_IMAGE
    doc["owner_id"] = identity.id
    product_id = create_document(db, "product", doc)
    logger.info("Product created", product_id=product_id, owner_id=identity.id, stock=data.stock)
    return ProductPublic.from_doc(_load(db, product_id))


def list_own_products(db: Database, identity: Identity) -> List[ProductPublic]:
    return [ProductPublic.from_doc(p) for p in get_documents(db, "product", {"owner_id": identity.id})]


def get_product(db: Database, identity: Identity, product_id: str) -> ProductPublic:
    """Any authenticated user may read any product."""
    return ProductPublic.from_doc(_load(db, product_id))


def update_product(db: Database, identity: Identity, product_id: str, data: ProductUpdate) -> ProductPublic:
    doc = _load_owned(db, identity, product_id, "update")
    update = _to_storage(data.model_dump(exclude_none=True))
    if not update:
        return ProductPublic.from_doc(doc)
    update["updated_at"] = utcnow()
    # Stock writes from the owner serialize with reservations on the same product
    with stock_locks.hold(str(doc["_id"]), config.STOCK_LOCK_TIMEOUT):
        doc = db["product"].find_one_and_update(
            {"_id": doc["_id"]},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
    if not doc:
        raise ProductNotFound(product_id)
    logger.info("Product updated", product_id=product_id, fields=sorted(k for k in update if k != "updated_at"))
    return ProductPublic.from_doc(doc)


def delete_product(db: Database, identity: Identity, product_id: str) -> None:
    doc = _load_owned(db, identity, product_id, "delete")
    with stock_locks.hold(str(doc["_id"]), config.STOCK_LOCK_TIMEOUT):
        db["product"].delete_one({"_id": doc["_id"]})
    logger.info("Product deleted", product_id=product_id, owner_id=identity.id)


# Browsing surface


def shop_view(db: Database, identity: Identity) -> List[ProductPublic]:
    """Active, in-stock products listed by anyone but the caller, newest first."""
    products = get_documents(
        db,
        "product",
        {"is_active": True, "stock": {"$gt": 0}, "owner_id": {"$ne": identity.id}},
    )
    owner_ids = {to_object_id(p["owner_id"]) for p in products}
    sellers = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": [o for o in owner_ids if o]}})}
    return [ProductPublic.from_doc(p, seller=sellers.get(p["owner_id"])) for p in products]


# Stock primitives


def reserve_stock(db: Database, product_id: str, quantity: int) -> Dict[str, Any]:
    """Atomically take `quantity` units of an active product.

    The check and the decrement are a single conditional update, run while the
    product's lock is held. Returns the product document as it is right after
    the decrement, so its price is the price the units were sold at.
    """
    oid = to_object_id(product_id)
    if oid is None:
        raise ProductNotFound(product_id)
    with stock_locks.hold(str(oid), config.STOCK_LOCK_TIMEOUT):
        doc = db["product"].find_one_and_update(
            {"_id": oid, "is_active": True, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return doc
        current = db["product"].find_one({"_id": oid})
    if current is None:
        raise ProductNotFound(product_id)
    logger.info("Reservation failed", product_id=product_id, requested=quantity, available=current["stock"])
    if not current.get("is_active", True):
        raise ValidationFailed(f"Product {product_id} is not available", product_id=product_id)
    raise InsufficientStock(product_id, available=current["stock"], requested=quantity)


def release_stock(db: Database, product_id: str, quantity: int) -> bool:
    """Return units taken by reserve_stock. False if the product no longer exists."""
    oid = to_object_id(product_id)
    if oid is None:
        return False
    with stock_locks.hold(str(oid), config.STOCK_LOCK_TIMEOUT):
        result = db["product"].update_one(
            {"_id": oid},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
        )
    if result.matched_count == 0:
        logger.warning("Stock release skipped, product is gone", product_id=product_id, quantity=quantity)
        return False
    return True
