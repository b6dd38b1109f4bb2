from typing import Dict, Optional

from primemart.config import utcnow
from primemart.errors import NotFoundError, ValidationError
from primemart.orders import isoformat, parse_object_id, safe_float, safe_positive_int


class Catalog:
    def __init__(self, collection, logger):
        self.collection = collection
        self.logger = logger

    def list_products(self):
        return [serialize_product(product) for product in self.collection.find().sort("created_at", -1)]

    def get_product(self, product_id: str) -> Dict:
        product = self.collection.find_one({"_id": parse_object_id(product_id, "Product")})
        if not product:
            raise NotFoundError("Product not found")
        return product

    def create_product(self, payload: Dict) -> Dict:
        fields = self._validated_fields(payload, require_category=True)
        now = utcnow()
        fields.update({"created_at": now, "updated_at": now})
        result = self.collection.insert_one(fields)
        fields["_id"] = result.inserted_id
        return fields

    def update_product(self, product_id: str, payload: Dict) -> Dict:
        product = self.get_product(product_id)
        fields = self._validated_fields(payload, require_category=False)
        fields["updated_at"] = utcnow()
        self.collection.update_one({"_id": product["_id"]}, {"$set": fields})
        return self.collection.find_one({"_id": product["_id"]})

    def delete_product(self, product_id: str) -> Dict:
        product = self.get_product(product_id)
        self.collection.delete_one({"_id": product["_id"]})
        return product

    def _validated_fields(self, payload: Optional[Dict], require_category: bool) -> Dict:
        payload = payload or {}
        name = str(payload.get("name") or "").strip()
        price = safe_float(payload.get("price"), 0.0)
        category = str(payload.get("category") or "").strip()
        if not name or price <= 0:
            raise ValidationError("Name and valid price required")
        if require_category and not category:
            raise ValidationError("Name, price, and category are required")

        image = payload.get("image") or payload.get("imageUrl") or ""
        if isinstance(image, dict):
            image = image.get("url") or ""

        fields = {"name": name, "price": round(price, 2)}
        if category:
            fields["category"] = category
        if "description" in payload:
            fields["description"] = str(payload.get("description") or "").strip()
        if "stock" in payload:
            fields["stock"] = safe_positive_int(payload.get("stock"), 0)
        elif require_category:
            fields["stock"] = 0
        if image:
            fields["image_url"] = str(image).strip()
        return fields


def serialize_product(product_document) -> Dict[str, object]:
    if not product_document:
        return {}
    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "price": product_document.get("price", 0),
        "description": product_document.get("description", ""),
        "category": product_document.get("category", ""),
        "stock": product_document.get("stock", 0),
        "image": product_document.get("image_url", ""),
        "createdAt": isoformat(product_document.get("created_at")),
    }
