"""
Stock ledger over `product.stock`.

Every decrement is a single conditional update, so stock can never be driven
below zero by two requests racing over the same product.
"""

import logging
from typing import Iterable, List

from pymongo import ReturnDocument
from pymongo.database import Database

from database import parse_object_id, utcnow
from errors import InsufficientStock, InvalidQuantity, InvalidStockValue, ProductNotFound

logger = logging.getLogger(__name__)


class StockLedger:
    def __init__(self, database: Database):
        self.products = database["product"]

    def _product_id(self, product_id):
        oid = parse_object_id(product_id)
        if oid is None:
            raise ProductNotFound()
        return oid

    def stock_of(self, product_id) -> int:
        doc = self.products.find_one({"_id": self._product_id(product_id)}, {"stock": 1})
        if doc is None:
            raise ProductNotFound()
        return int(doc.get("stock", 0))

    def reserve(self, product_id, quantity: int) -> dict:
        """Take `quantity` units out of stock, or fail without touching it."""
        if quantity <= 0:
            raise InvalidQuantity()
        oid = self._product_id(product_id)
        doc = self.products.find_one_and_update(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = self.products.find_one({"_id": oid}, {"name": 1})
            if current is None:
                raise ProductNotFound()
            raise InsufficientStock(current.get("name"))
        return doc

    def release(self, product_id, quantity: int) -> dict:
        if quantity <= 0:
            raise InvalidQuantity()
        doc = self.products.find_one_and_update(
            {"_id": self._product_id(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ProductNotFound()
        logger.info("Released %d unit(s) of product %s", quantity, doc["_id"])
        return doc

    def release_many(self, lines: Iterable[dict]) -> None:
        """Release each {product_id, quantity} line; lines for deleted products are skipped."""
        for line in lines:
            try:
                self.release(line["product_id"], line["quantity"])
            except ProductNotFound:
                logger.warning("Cannot release stock for missing product %s", line["product_id"])

    def set_stock(self, product_id, quantity: int) -> dict:
        if quantity < 0:
            raise InvalidStockValue()
        doc = self.products.find_one_and_update(
            {"_id": self._product_id(product_id)},
            {"$set": {"stock": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ProductNotFound()
        return doc

    def adjust_stock(self, product_id, delta: int) -> dict:
        oid = self._product_id(product_id)
        query = {"_id": oid}
        if delta < 0:
            query["stock"] = {"$gte": -delta}
        doc = self.products.find_one_and_update(
            query,
            {"$inc": {"stock": delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if self.products.find_one({"_id": oid}, {"_id": 1}) is None:
                raise ProductNotFound()
            raise InvalidStockValue()
        return doc

    def apply_updates(self, updates: List[dict]) -> List[dict]:
        """
        Bulk administrative update. Each entry is
        {"product_id", "quantity", "operation": "add" | "set"}.

        Every entry is validated before any is written; a failure while
        writing leaves earlier entries applied.
        """
        for update in updates:
            self._product_id(update["product_id"])
            if update.get("operation", "set") == "set" and update["quantity"] < 0:
                raise InvalidStockValue()
        results = []
        for update in updates:
            if update.get("operation", "set") == "add":
                results.append(self.adjust_stock(update["product_id"], update["quantity"]))
            else:
                results.append(self.set_stock(update["product_id"], update["quantity"]))
        return results
