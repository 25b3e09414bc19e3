import os
import logging
from typing import Any, Dict, List, Optional

import yaml
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import ValidationError

from .models import SafetyFilter

logger = logging.getLogger(__name__)


class SafetyFilterStore:
    """Operator-configured safety filters.

    Rules are validated on create/update. Documents that no longer validate
    (edited by hand, older formats) are still returned raw by
    ``active_documents`` so the policy engine can flag them.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["safety_filters"]
        else:
            raise ValueError("SafetyFilterStore requires a db or collection")

    async def active_documents(self) -> List[Dict[str, Any]]:
        cursor = self._col.find({"is_active": True}).sort([("created_at", 1)])
        return await cursor.to_list(length=None)

    async def list(self, include_inactive: bool = False) -> List[SafetyFilter]:
        query: Dict[str, Any] = {} if include_inactive else {"is_active": True}
        cursor = self._col.find(query).sort([("created_at", 1)])
        results: List[SafetyFilter] = []
        for doc in await cursor.to_list(length=None):
            try:
                results.append(SafetyFilter.from_document(doc))
            except ValidationError as e:
                logger.warning("Safety filter %s has invalid rules: %s", doc.get("_id"), e)
        return results

    async def get(self, filter_id: str) -> Optional[SafetyFilter]:
        doc = await self._col.find_one({"_id": filter_id})
        if doc is None:
            return None
        return SafetyFilter.from_document(doc)

    async def create(self, data: Dict[str, Any]) -> SafetyFilter:
        sf = SafetyFilter.model_validate(data)
        await self._col.insert_one(sf.to_document())
        logger.info("Created safety filter %s (%s)", sf.name, sf.filter_type.value)
        return sf

    async def update(self, filter_id: str, changes: Dict[str, Any]) -> Optional[SafetyFilter]:
        """Apply a partial update; the merged filter is re-validated before writing."""
        doc = await self._col.find_one({"_id": filter_id})
        if doc is None:
            return None
        merged = dict(doc)
        merged.update({k: v for k, v in changes.items() if v is not None})
        merged["_id"] = filter_id
        sf = SafetyFilter.from_document(merged)
        new_doc = sf.to_document()
        new_doc.pop("_id")
        await self._col.update_one({"_id": filter_id}, {"$set": new_doc})
        logger.info("Updated safety filter %s", filter_id)
        return sf

    async def seed(self, filters: List[Dict[str, Any]]) -> int:
        if await self._col.count_documents({}) > 0:
            return 0
        count = 0
        for f in filters:
            try:
                await self.create(f)
                count += 1
            except ValidationError as e:
                logger.warning("Skipping invalid safety filter seed %s: %s", f.get("name"), e)
        return count


def load_filter_seed(path: Optional[str] = None) -> List[Dict[str, Any]]:
    if not path:
        path = os.getenv(
            "SAFETY_FILTERS_SEED_PATH",
            os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "safety_filters.yaml"),
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            return list(data.get("filters") or [])
    except FileNotFoundError:
        logger.info("Safety filter seed not found at %s; starting without default filters", path)
        return []
    except Exception as e:
        logger.warning("Failed to load safety filter seed: %s", e)
        return []
