"""
Shopping cart: one cart per user, lines unique per product.

Stock is checked when a line is added but nothing is held; the reservation
happens at checkout.
"""

from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import parse_object_id, serialize_doc, utcnow
from errors import CartItemNotFound, InsufficientStock, InvalidQuantity, ProductNotFound, UserNotFound

PRODUCT_FIELDS = {"name": 1, "price": 1, "stock": 1}


class CartService:
    def __init__(self, database: Database):
        self.db = database

    def _user_oid(self, user_id) -> ObjectId:
        oid = parse_object_id(user_id)
        if oid is None:
            raise UserNotFound()
        return oid

    def _find_cart(self, user_id) -> Optional[dict]:
        return self.db["cart"].find_one({"user_id": self._user_oid(user_id)})

    def _ensure_cart(self, user_id) -> dict:
        now = utcnow()
        return self.db["cart"].find_one_and_update(
            {"user_id": self._user_oid(user_id)},
            {"$setOnInsert": {"created_at": now}, "$set": {"updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _with_product(self, line: dict) -> dict:
        product = self.db["product"].find_one({"_id": line["product_id"]}, PRODUCT_FIELDS)
        out = serialize_doc(line)
        out["product"] = serialize_doc(product)
        return out

    def _lines(self, cart: Optional[dict]) -> List[dict]:
        if cart is None:
            return []
        cursor = self.db["cartitem"].find({"cart_id": cart["_id"]}).sort("created_at", 1)
        return [self._with_product(line) for line in cursor]

    def get_or_create_cart(self, user_id) -> Dict[str, Any]:
        cart = self._ensure_cart(user_id)
        out = serialize_doc(cart)
        out["items"] = self._lines(cart)
        return out

    def add_item(self, user_id, product_id, quantity: int) -> dict:
        """Add `quantity` of a product, summing into an existing line for it."""
        if quantity <= 0:
            raise InvalidQuantity()
        pid = parse_object_id(product_id)
        product = self.db["product"].find_one({"_id": pid}) if pid else None
        if product is None:
            raise ProductNotFound()
        if quantity > product.get("stock", 0):
            raise InsufficientStock(product.get("name"))

        cart = self._ensure_cart(user_id)
        now = utcnow()
        # the (cart_id, product_id) unique index keeps concurrent first adds on one line
        line = self.db["cartitem"].find_one_and_update(
            {"cart_id": cart["_id"], "product_id": pid},
            {
                "$inc": {"quantity": quantity},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._with_product(line)

    def _line_query(self, cart_item_id, user_id=None) -> dict:
        oid = parse_object_id(cart_item_id)
        if oid is None:
            raise CartItemNotFound()
        query = {"_id": oid}
        if user_id is not None:
            cart = self._find_cart(user_id)
            if cart is None:
                raise CartItemNotFound()
            query["cart_id"] = cart["_id"]
        return query

    def update_item_quantity(self, cart_item_id, quantity: int, user_id=None) -> dict:
        if quantity <= 0:
            raise InvalidQuantity()
        line = self.db["cartitem"].find_one_and_update(
            self._line_query(cart_item_id, user_id),
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if line is None:
            raise CartItemNotFound()
        return self._with_product(line)

    def remove_item(self, cart_item_id, user_id=None) -> None:
        result = self.db["cartitem"].delete_one(self._line_query(cart_item_id, user_id))
        if result.deleted_count == 0:
            raise CartItemNotFound()

    def clear(self, user_id) -> None:
        cart = self._find_cart(user_id)
        if cart is not None:
            self.db["cartitem"].delete_many({"cart_id": cart["_id"]})

    def total(self, user_id) -> float:
        """Sum of live price x quantity over the cart's lines."""
        return self._total(self._lines(self._find_cart(user_id)))

    @staticmethod
    def _total(lines: List[dict]) -> float:
        total = 0.0
        for line in lines:
            product = line.get("product") or {}
            total += product.get("price", 0) * line["quantity"]
        return total

    def summary(self, user_id) -> Dict[str, Any]:
        lines = self._lines(self._find_cart(user_id))
        return {"items": lines, "total": self._total(lines), "item_count": len(lines)}
