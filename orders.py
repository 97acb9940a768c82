"""
Order engine: placement, status transitions and order reads.

Placement is all-or-nothing. Every line is checked before any stock moves,
then each product is reserved with an atomic conditional decrement; if any
reservation or the final insert fails, the reservations already taken are
released before the error reaches the caller.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from catalog import release_stock, reserve_stock
from database import create_document, get_documents, to_decimal, to_decimal128, to_object_id, utcnow
from errors import (
    Forbidden,
    InsufficientStock,
    Internal,
    InvalidTransition,
    MarketplaceError,
    OrderNotFound,
    ProductNotFound,
    ValidationFailed,
)
from logging_config import get_logger
from schemas import MAX_UNITS, PLACEHOLDER_IMAGE, Address, Identity, OrderItem, OrderPublic, OrderStatus

logger = get_logger(__name__)

# (from, to) pairs a buyer may request
BUYER_TRANSITIONS = frozenset({(OrderStatus.PENDING, OrderStatus.CANCELLED)})


def _merge_lines(items: Iterable[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Validate the requested lines and fold repeated products into one line."""
    if items is None or isinstance(items, (str, bytes, dict)):
        raise ValidationFailed("Items must be an array")
    merged: "OrderedDict[str, int]" = OrderedDict()
    for index, line in enumerate(items):
        try:
            product_id, quantity = line
        except (TypeError, ValueError) as e:
            raise ValidationFailed("Each item needs a product and a quantity", index=index) from e
        if not isinstance(product_id, str) or not product_id:
            raise ValidationFailed("Product ID is required", index=index)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationFailed("Quantity must be at least 1", index=index, product_id=product_id)
        # Valid ids in any hex casing name the same product
        oid = to_object_id(product_id)
        key = str(oid) if oid else product_id
        merged[key] = merged.get(key, 0) + quantity
        if merged[key] > MAX_UNITS:
            raise ValidationFailed(f"Quantity must be at most {MAX_UNITS}", index=index, product_id=product_id)
    if not merged:
        raise ValidationFailed("Order must contain at least one item")
    return list(merged.items())


def _check_available(db: Database, lines: Sequence[Tuple[str, int]]) -> None:
    """Read-only pass: fail before any mutation if a line cannot be served right now."""
    for product_id, quantity in lines:
        oid = to_object_id(product_id)
        product = db["product"].find_one({"_id": oid}) if oid else None
        if product is None:
            raise ProductNotFound(product_id)
        if not product.get("is_active", True):
            raise ValidationFailed(f"Product {product_id} is not available", product_id=product_id)
        if product["stock"] < quantity:
            raise InsufficientStock(product_id, available=product["stock"], requested=quantity)


def _release_all(db: Database, reserved: Sequence[Tuple[str, int]], order_ref: str) -> None:
    for product_id, quantity in reversed(reserved):
        try:
            release_stock(db, product_id, quantity)
        except Exception:
            logger.exception(
                "Failed to release reserved stock",
                product_id=product_id,
                quantity=quantity,
                order_ref=order_ref,
            )
        else:
            logger.info("Reservation compensated", product_id=product_id, quantity=quantity, order_ref=order_ref)


def place_order(
    db: Database,
    identity: Identity,
    items: Iterable[Tuple[str, int]],
    shipping_address: Union[Address, Dict[str, Any]],
) -> OrderPublic:
    lines = _merge_lines(items)
    try:
        address = Address.model_validate(shipping_address)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationFailed("A complete shipping address is required", fields=fields) from e

    _check_available(db, lines)

    order_ref = f"{identity.id}:{utcnow().isoformat()}"
    reserved: List[Tuple[str, int]] = []
    order_items: List[OrderItem] = []
    try:
        for product_id, quantity in lines:
            product = reserve_stock(db, product_id, quantity)
            reserved.append((product_id, quantity))
            order_items.append(
                OrderItem(
                    product_id=product_id,
                    name=product["name"],
                    image_url=product.get("image_url") or PLACEHOLDER_IMAGE,
                    quantity=quantity,
                    price=to_decimal(product["price"]),
                )
            )
        total = sum((item.subtotal for item in order_items), Decimal("0"))
        order_id = create_document(
            db,
            "order",
            {
                "user_id": identity.id,
                "items": [
                    {
                        "product_id": item.product_id,
                        "name": item.name,
                        "image_url": item.image_url,
                        "quantity": item.quantity,
                        "price": to_decimal128(item.price),
                    }
                    for item in order_items
                ],
                "total": to_decimal128(total),
                "status": OrderStatus.PENDING.value,
                "shipping_address": address.model_dump(),
            },
        )
    except BaseException as exc:
        if isinstance(exc, MarketplaceError):
            logger.info(
                "Order placement rejected",
                user_id=identity.id,
                error=exc.message,
                reserved=len(reserved),
            )
        else:
            logger.exception("Order placement failed", user_id=identity.id, reserved=len(reserved))
        _release_all(db, reserved, order_ref)
        if isinstance(exc, MarketplaceError) or not isinstance(exc, Exception):
            raise
        raise Internal("Order could not be placed") from exc

    logger.info("Order placed", order_id=order_id, user_id=identity.id, items=len(order_items), total=str(total))
    return get_order(db, identity, order_id)


def _load(db: Database, order_id: str) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid else None
    if not order:
        raise OrderNotFound(order_id)
    return order


def _load_owned(db: Database, identity: Identity, order_id: str, action: str) -> Dict[str, Any]:
    order = _load(db, order_id)
    if order["user_id"] != identity.id:
        raise Forbidden(f"Not authorized to {action} this order")
    return order


def get_order(db: Database, identity: Identity, order_id: str) -> OrderPublic:
    return OrderPublic.from_doc(_load_owned(db, identity, order_id, "view"))


def list_orders(db: Database, identity: Identity) -> List[OrderPublic]:
    return [OrderPublic.from_doc(o) for o in get_documents(db, "order", {"user_id": identity.id})]


def list_all_orders(db: Database) -> List[OrderPublic]:
    return [OrderPublic.from_doc(o) for o in get_documents(db, "order")]


def update_order_status(
    db: Database,
    identity: Identity,
    order_id: str,
    new_status: Union[OrderStatus, str],
) -> OrderPublic:
    order = _load_owned(db, identity, order_id, "update")
    current = OrderStatus(order["status"])
    try:
        target = OrderStatus(new_status)
    except ValueError as e:
        raise ValidationFailed(f"Unknown order status '{new_status}'") from e

    if (current, target) not in BUYER_TRANSITIONS:
        raise InvalidTransition(current.value, target.value)

    now = utcnow()
    # Conditional on the current status so concurrent requests transition once
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": {"status": target.value, "updated_at": now, f"{target.value}_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = _load(db, order_id)
        raise InvalidTransition(latest["status"], target.value)

    logger.info("Order status changed", order_id=order_id, previous=current.value, status=target.value)

    if target is OrderStatus.CANCELLED and config.RESTOCK_ON_CANCEL:
        for item in updated["items"]:
            if release_stock(db, item["product_id"], item["quantity"]):
                logger.info("Restocked on cancel", order_id=order_id, product_id=item["product_id"], quantity=item["quantity"])

    return OrderPublic.from_doc(updated)
