"""
Order lifecycle: checkout from cart, status changes, cancellation.

Statuses run pending -> confirmed -> shipped -> delivered, with cancelled
reachable from anything but delivered. Checkout reserves stock line by line;
if any line cannot be reserved, every reservation made so far is released and
no order is written. Items live inside the order document, so the order and
its items appear in a single write.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import parse_object_id, serialize_doc, utcnow
from errors import (
    EmptyCart,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    ProductNotFound,
    StoreError,
    UserNotFound,
)
from schemas import ORDER_STATUSES, Order, OrderItem
from stock import StockLedger

logger = logging.getLogger(__name__)

DEFAULT_RELEASE_STATUSES = frozenset({"pending"})


class OrderService:
    def __init__(
        self,
        database: Database,
        ledger: Optional[StockLedger] = None,
        release_on_cancel: Iterable[str] = DEFAULT_RELEASE_STATUSES,
        clock: Callable = utcnow,
    ):
        self.db = database
        self.ledger = ledger or StockLedger(database)
        self.release_on_cancel = frozenset(release_on_cancel) - {"cancelled", "delivered"}
        self.clock = clock

    def _order_oid(self, order_id) -> ObjectId:
        oid = parse_object_id(order_id)
        if oid is None:
            raise OrderNotFound()
        return oid

    def _load_cart_lines(self, user_oid: ObjectId) -> List[dict]:
        cart = self.db["cart"].find_one({"user_id": user_oid})
        if cart is None:
            return []
        return list(self.db["cartitem"].find({"cart_id": cart["_id"]}).sort("created_at", 1))

    def create_from_cart(self, user_id, shipping_address: str, payment_method: str) -> dict:
        user_oid = parse_object_id(user_id)
        if user_oid is None:
            raise UserNotFound()
        lines = self._load_cart_lines(user_oid)
        if not lines:
            raise EmptyCart()

        product_ids = [line["product_id"] for line in lines]
        products = {p["_id"]: p for p in self.db["product"].find({"_id": {"$in": product_ids}})}

        items: List[OrderItem] = []
        total_amount = 0.0
        for line in lines:
            product = products.get(line["product_id"])
            if product is None:
                raise ProductNotFound()
            total_amount += product["price"] * line["quantity"]
            items.append(OrderItem(
                product_id=product["_id"],
                name=product["name"],
                quantity=line["quantity"],
                unit_price=product["price"],
            ))

        for item in items:
            if products[item.product_id].get("stock", 0) < item.quantity:
                raise InsufficientStock(item.name)

        order = Order(
            user_id=user_oid,
            items=items,
            total_amount=total_amount,
            shipping_address=shipping_address,
            payment_method=payment_method,
            status="pending",
        )

        reserved = []
        try:
            for item in items:
                self.ledger.reserve(item.product_id, item.quantity)
                reserved.append({"product_id": item.product_id, "quantity": item.quantity})
            doc = order.to_document()
            now = self.clock()
            doc["created_at"] = now
            doc["updated_at"] = now
            order_id = self.db["order"].insert_one(doc).inserted_id
        except (StoreError, PyMongoError):
            if reserved:
                logger.warning("Checkout for user %s failed, releasing %d reservation(s)", user_oid, len(reserved))
                self.ledger.release_many(reserved)
            raise

        # only the lines that were ordered; anything added meanwhile stays in the cart
        self.db["cartitem"].delete_many({"_id": {"$in": [line["_id"] for line in lines]}})
        logger.info("Order %s created for user %s, total %.2f", order_id, user_oid, total_amount)
        return self.get(order_id)

    def get(self, order_id) -> dict:
        doc = self.db["order"].find_one({"_id": self._order_oid(order_id)})
        if doc is None:
            raise OrderNotFound()
        return serialize_doc(doc)

    def list_for_user(self, user_id) -> List[dict]:
        user_oid = parse_object_id(user_id)
        if user_oid is None:
            return []
        cursor = self.db["order"].find({"user_id": user_oid}).sort("created_at", DESCENDING)
        return [serialize_doc(d) for d in cursor]

    def list_all(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        query = {"status": status} if status else {}
        cursor = self.db["order"].find(query).sort("created_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize_doc(d) for d in cursor]

    def recent(self, limit: int = 10) -> List[dict]:
        return self.list_all(limit=limit)

    def update_status(self, order_id, status: str) -> dict:
        """Set any of the five statuses; transition rules belong to the caller."""
        if status not in ORDER_STATUSES:
            raise InvalidTransition(f"Unknown order status: {status}")
        doc = self.db["order"].find_one_and_update(
            {"_id": self._order_oid(order_id)},
            {"$set": {"status": status, "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise OrderNotFound()
        logger.info("Order %s moved to %s", doc["_id"], status)
        return serialize_doc(doc)

    def batch_update_status(self, order_ids: List[str], status: str) -> Dict[str, int]:
        if status not in ORDER_STATUSES:
            raise InvalidTransition(f"Unknown order status: {status}")
        oids = [oid for oid in (parse_object_id(i) for i in order_ids) if oid is not None]
        result = self.db["order"].update_many(
            {"_id": {"$in": oids}},
            {"$set": {"status": status, "updated_at": self.clock()}},
        )
        return {"matched": result.matched_count, "modified": result.modified_count}

    def cancel(self, order_id) -> dict:
        oid = self._order_oid(order_id)
        order = self.db["order"].find_one({"_id": oid})
        if order is None:
            raise OrderNotFound()
        prior = order["status"]
        if prior == "delivered":
            raise InvalidTransition("A delivered order cannot be cancelled")

        # keyed on the status we read, so concurrent cancels release stock once
        updated = self.db["order"].find_one_and_update(
            {"_id": oid, "status": prior},
            {"$set": {"status": "cancelled", "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidTransition("Order status changed while cancelling")

        if prior in self.release_on_cancel:
            try:
                self._release_items(order["items"])
            except PyMongoError:
                self.db["order"].update_one(
                    {"_id": oid, "status": "cancelled"},
                    {"$set": {"status": prior, "updated_at": self.clock()}},
                )
                logger.warning("Cancelling order %s failed, status restored to %s", oid, prior)
                raise
        logger.info("Order %s cancelled (was %s)", oid, prior)
        return serialize_doc(updated)

    def _release_items(self, items: List[dict]) -> None:
        """Release every item's stock or none of it."""
        released = []
        try:
            for item in items:
                try:
                    self.ledger.release(item["product_id"], item["quantity"])
                except ProductNotFound:
                    logger.warning("Cannot release stock for missing product %s", item["product_id"])
                    continue
                released.append(item)
        except PyMongoError:
            logger.warning("Stock release failed, taking back %d released line(s)", len(released))
            for item in released:
                try:
                    self.ledger.reserve(item["product_id"], item["quantity"])
                except (StoreError, PyMongoError):
                    logger.exception("Could not take back %d unit(s) of product %s", item["quantity"], item["product_id"])
            raise

    def stats(self) -> Dict[str, int]:
        counts = {status: self.db["order"].count_documents({"status": status}) for status in ORDER_STATUSES}
        counts["total"] = self.db["order"].count_documents({})
        return counts

    def count_for_user(self, user_id) -> int:
        user_oid = parse_object_id(user_id)
        if user_oid is None:
            return 0
        return self.db["order"].count_documents({"user_id": user_oid})
