import asyncio
import os
import logging
from typing import Any, Dict, List, Optional

import yaml
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import PricingEntry

logger = logging.getLogger(__name__)


class PricingStore:
    """Append-only price history keyed by (provider, model_name).

    ``update`` inserts the new entry before deactivating older ones and
    ``lookup`` always takes the newest active entry, so a reader racing an
    update sees either the old price or the new one, never none.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["model_pricing"]
        else:
            raise ValueError("PricingStore requires a db or collection")
        self._lock = asyncio.Lock()

    async def lookup(self, provider: str, model_name: str) -> Optional[PricingEntry]:
        doc = await self._col.find_one(
            {"provider": provider, "model_name": model_name, "is_active": True},
            sort=[("effective_date", -1)],
        )
        if doc is None:
            return None
        return PricingEntry.from_document(doc)

    async def update(
        self,
        provider: str,
        model_name: str,
        input_cost_per_1k: float,
        output_cost_per_1k: float,
        currency: str = "USD",
    ) -> PricingEntry:
        entry = PricingEntry(
            provider=provider,
            model_name=model_name,
            input_cost_per_1k=input_cost_per_1k,
            output_cost_per_1k=output_cost_per_1k,
            currency=currency,
        )
        async with self._lock:
            await self._col.insert_one(entry.to_document())
            await self._col.update_many(
                {"provider": provider, "model_name": model_name, "is_active": True, "_id": {"$ne": entry.id}},
                {"$set": {"is_active": False}},
            )
        logger.info(
            "Pricing updated for %s/%s: input=%s output=%s per 1k %s",
            provider,
            model_name,
            input_cost_per_1k,
            output_cost_per_1k,
            currency,
        )
        return entry

    async def list_active(self) -> List[PricingEntry]:
        """Current price per (provider, model_name).

        An update briefly leaves the superseded entry active; only the newest
        one is returned, matching ``lookup``.
        """
        cursor = self._col.find({"is_active": True}).sort(
            [("provider", 1), ("model_name", 1), ("effective_date", -1)]
        )
        current: Dict[tuple, PricingEntry] = {}
        for d in await cursor.to_list(length=None):
            current.setdefault((d["provider"], d["model_name"]), PricingEntry.from_document(d))
        return list(current.values())

    async def history(self, provider: str, model_name: str) -> List[PricingEntry]:
        cursor = self._col.find({"provider": provider, "model_name": model_name}).sort([("effective_date", -1)])
        return [PricingEntry.from_document(d) for d in await cursor.to_list(length=None)]

    async def seed(self, entries: List[Dict[str, Any]]) -> int:
        """Insert default prices when the collection is empty."""
        if await self._col.count_documents({}) > 0:
            return 0
        count = 0
        for e in entries:
            try:
                entry = PricingEntry(
                    provider=e["provider"],
                    model_name=e["model_name"],
                    input_cost_per_1k=e["input_cost_per_1k"],
                    output_cost_per_1k=e["output_cost_per_1k"],
                    currency=e.get("currency", "USD"),
                )
            except Exception as err:
                logger.warning("Skipping invalid pricing seed %s: %s", e, err)
                continue
            await self._col.insert_one(entry.to_document())
            count += 1
        logger.info("Seeded %d pricing entries", count)
        return count


def load_pricing_seed(path: Optional[str] = None) -> List[Dict[str, Any]]:
    if not path:
        path = os.getenv(
            "PRICING_SEED_PATH",
            os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "pricing.yaml"),
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Pricing seed file not found at %s; starting without default prices", path)
        return []
    except Exception as e:
        logger.warning("Failed to load pricing seed: %s", e)
        return []

    entries: List[Dict[str, Any]] = []
    for provider, models in (data.get("pricing") or {}).items():
        for model_name, prices in (models or {}).items():
            if not isinstance(prices, dict):
                continue
            entries.append(
                {
                    "provider": provider,
                    "model_name": model_name,
                    "input_cost_per_1k": prices.get("input"),
                    "output_cost_per_1k": prices.get("output"),
                    "currency": prices.get("currency", "USD"),
                }
            )
    return entries
