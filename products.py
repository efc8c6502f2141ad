"""
Product catalog: public listing and admin CRUD.
"""

import logging
import re
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, parse_object_id, serialize_doc, utcnow
from errors import InvalidStockValue, ProductInUse, ProductNotFound, StoreError
from schemas import Product

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "price", "stock", "category", "image")


class ProductCatalog:
    def __init__(self, database: Database):
        self.db = database

    def _oid(self, product_id):
        oid = parse_object_id(product_id)
        if oid is None:
            raise ProductNotFound()
        return oid

    def create(self, product: Product) -> dict:
        product_id = create_document(self.db, "product", product)
        logger.info("Created product %s (%s)", product_id, product.name)
        return self.get(product_id)

    def get(self, product_id) -> dict:
        doc = self.db["product"].find_one({"_id": self._oid(product_id)})
        if doc is None:
            raise ProductNotFound()
        return serialize_doc(doc)

    def list(
        self,
        category: Optional[str] = None,
        q: Optional[str] = None,
        in_stock: Optional[bool] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        if q:
            pattern = re.escape(q)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if in_stock is True:
            query["stock"] = {"$gt": 0}
        elif in_stock is False:
            query["stock"] = 0

        page = max(1, page)
        per_page = max(1, per_page)
        total = self.db["product"].count_documents(query)
        cursor = (
            self.db["product"]
            .find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * per_page)
            .limit(per_page)
        )
        return {
            "items": [serialize_doc(d) for d in cursor],
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        }

    def update(self, product_id, changes: Dict[str, Any]) -> dict:
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
        if "price" in fields and fields["price"] < 0:
            raise StoreError("Price must not be negative")
        if "stock" in fields and fields["stock"] < 0:
            raise InvalidStockValue()
        fields["updated_at"] = utcnow()
        doc = self.db["product"].find_one_and_update(
            {"_id": self._oid(product_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ProductNotFound()
        return serialize_doc(doc)

    def delete(self, product_id) -> None:
        """Delete a product no order refers to; its cart lines go with it."""
        oid = self._oid(product_id)
        if self.db["order"].count_documents({"items.product_id": oid}) > 0:
            raise ProductInUse()
        result = self.db["product"].delete_one({"_id": oid})
        if result.deleted_count == 0:
            raise ProductNotFound()
        self.db["cartitem"].delete_many({"product_id": oid})
        logger.info("Deleted product %s", oid)

    def low_stock(self, threshold: int = 10) -> list:
        cursor = self.db["product"].find({"stock": {"$lte": threshold}}).sort("stock", ASCENDING)
        return [serialize_doc(d) for d in cursor]
