import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import UsageRecord, UsageStatus, utcnow

logger = logging.getLogger(__name__)

GROUP_BY_OPTIONS = ("day", "week", "month", "model", "provider")

_PERIOD_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%G-W%V",
    "month": "%Y-%m",
}


class StorageError(Exception):
    """A usage record could not be written or read."""


@dataclass
class UsageQuery:
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    model_provider: Optional[str] = None
    model_name: Optional[str] = None
    status: Optional[str] = None

    def to_mongo(self) -> Dict[str, Any]:
        q: Dict[str, Any] = {}
        for field in ("user_id", "team_id", "model_provider", "model_name", "status"):
            value = getattr(self, field)
            if value is not None:
                q[field] = value
        window: Dict[str, datetime] = {}
        if self.start is not None:
            window["$gte"] = self.start
        if self.end is not None:
            window["$lte"] = self.end
        if window:
            q["created_at"] = window
        return q


def _resolve_timezone(name: Optional[str]) -> tzinfo:
    name = name or os.getenv("STORE_TIMEZONE", "UTC")
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class UsageStore:
    """Append-only log of usage records.

    Records are written once, after the tracking pipeline has finalized them.
    The store offers no update or delete; policy windows (rate, daily cost)
    are computed from it with count and sum queries.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
        timezone_name: Optional[str] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["usage_records"]
        else:
            raise ValueError("UsageStore requires a db or collection")
        self._tz = _resolve_timezone(timezone_name)

    @property
    def timezone_name(self) -> str:
        return "UTC" if self._tz is timezone.utc else str(self._tz)

    async def insert(self, record: UsageRecord) -> str:
        if not record.is_final:
            raise ValueError(f"refusing to persist record {record.id} in status processing")
        try:
            await self._col.insert_one(record.to_document())
        except Exception as e:
            logger.error("Failed to persist usage record %s: %s", record.id, e)
            raise StorageError(f"failed to persist usage record {record.id}: {e}") from e
        return record.id

    async def get(self, record_id: str) -> Optional[UsageRecord]:
        doc = await self._col.find_one({"_id": record_id})
        if doc is None:
            return None
        return UsageRecord.from_document(doc)

    async def list(self, query: Optional[UsageQuery] = None, limit: int = 100, offset: int = 0) -> List[UsageRecord]:
        """Return matching records, newest first."""
        q = (query or UsageQuery()).to_mongo()
        cursor = self._col.find(q).sort([("created_at", -1)]).skip(int(offset)).limit(int(limit))
        docs = await cursor.to_list(length=int(limit))
        return [UsageRecord.from_document(d) for d in docs]

    async def count(self, query: Optional[UsageQuery] = None) -> int:
        return int(await self._col.count_documents((query or UsageQuery()).to_mongo()))

    def day_start(self, now: Optional[datetime] = None) -> datetime:
        """Start of the calendar day containing ``now`` in the store timezone, as UTC."""
        local = (now or utcnow()).astimezone(self._tz)
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return start.astimezone(timezone.utc)

    async def count_since(self, user_id: Optional[str], team_id: Optional[str], since: datetime) -> int:
        q = {"user_id": user_id, "team_id": team_id, "created_at": {"$gte": since}}
        return int(await self._col.count_documents(q))

    async def cost_since(self, user_id: Optional[str], team_id: Optional[str], since: datetime) -> float:
        pipeline = [
            {"$match": {"user_id": user_id, "team_id": team_id, "created_at": {"$gte": since}}},
            {"$group": {"_id": None, "total_cost": {"$sum": "$total_cost"}}},
        ]
        docs = await self._col.aggregate(pipeline).to_list(length=1)
        if docs:
            return float(docs[0].get("total_cost", 0) or 0)
        return 0.0

    async def summary(self, query: Optional[UsageQuery] = None, group_by: str = "day") -> List[Dict[str, Any]]:
        if group_by not in GROUP_BY_OPTIONS:
            raise ValueError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")

        group_id: Dict[str, Any] = {"model_provider": "$model_provider"}
        if group_by != "provider":
            group_id["model_name"] = "$model_name"
        if group_by in _PERIOD_FORMATS:
            group_id["period"] = {
                "$dateToString": {
                    "format": _PERIOD_FORMATS[group_by],
                    "date": "$created_at",
                    "timezone": self.timezone_name,
                }
            }

        pipeline = [
            {"$match": (query or UsageQuery()).to_mongo()},
            {
                "$group": {
                    "_id": group_id,
                    "total_calls": {"$sum": 1},
                    "total_input_tokens": {"$sum": "$input_tokens"},
                    "total_output_tokens": {"$sum": "$output_tokens"},
                    "total_tokens": {"$sum": "$total_tokens"},
                    "total_cost": {"$sum": "$total_cost"},
                    "avg_response_time": {"$avg": "$response_time_ms"},
                    "success_count": {"$sum": _status_counter(UsageStatus.SUCCESS)},
                    "failure_count": {"$sum": _status_counter(UsageStatus.FAILURE)},
                    "hallucination_count": {"$sum": _status_counter(UsageStatus.HALLUCINATION)},
                }
            },
        ]
        docs = await self._col.aggregate(pipeline).to_list(length=None)

        rows: List[Dict[str, Any]] = []
        for d in docs:
            row = dict(d.pop("_id") or {})
            row.update(d)
            row.setdefault("period", None)
            row.setdefault("model_name", None)
            rows.append(row)
        rows.sort(key=lambda r: float(r.get("total_cost") or 0), reverse=True)
        rows.sort(key=lambda r: r.get("period") or "", reverse=True)
        return rows

    async def realtime_metrics(self, window: timedelta = timedelta(hours=1), now: Optional[datetime] = None) -> Dict[str, Any]:
        since = (now or utcnow()) - window
        match = {"$match": {"created_at": {"$gte": since}}}
        totals_pipeline = [
            match,
            {
                "$group": {
                    "_id": None,
                    "calls": {"$sum": 1},
                    "cost": {"$sum": "$total_cost"},
                    "tokens": {"$sum": "$total_tokens"},
                    "avg_response_time": {"$avg": "$response_time_ms"},
                }
            },
        ]
        models_pipeline = [
            match,
            {
                "$group": {
                    "_id": {"model_provider": "$model_provider", "model_name": "$model_name"},
                    "calls": {"$sum": 1},
                    "cost": {"$sum": "$total_cost"},
                }
            },
        ]
        totals = await self._col.aggregate(totals_pipeline).to_list(length=1)
        models = await self._col.aggregate(models_pipeline).to_list(length=None)

        metrics = {"calls": 0, "cost": 0.0, "tokens": 0, "avg_response_time": None}
        if totals:
            t = totals[0]
            metrics = {
                "calls": int(t.get("calls", 0) or 0),
                "cost": float(t.get("cost", 0) or 0),
                "tokens": int(t.get("tokens", 0) or 0),
                "avg_response_time": t.get("avg_response_time"),
            }
        active = [{**m["_id"], "calls": int(m["calls"]), "cost": float(m["cost"] or 0)} for m in models]
        active.sort(key=lambda m: m["calls"], reverse=True)
        return {"metrics": metrics, "active_models": active}

    async def stats(
        self,
        now: Optional[datetime] = None,
        overview_days: int = 30,
        activity_days: int = 7,
        top: int = 10,
    ) -> Dict[str, Any]:
        """Dashboard overview.

        Windows start at midnight (store timezone) ``overview_days`` and
        ``activity_days`` days back. ``recent_activity`` lists the busiest
        provider/model pairs; ``status_breakdown`` counts records per status.
        """
        today = self.day_start(now)
        overview_match = {"$match": {"created_at": {"$gte": today - timedelta(days=overview_days)}}}
        activity_match = {"$match": {"created_at": {"$gte": today - timedelta(days=activity_days)}}}

        overview_pipeline = [
            overview_match,
            {
                "$group": {
                    "_id": None,
                    "total_calls": {"$sum": 1},
                    "total_tokens": {"$sum": "$total_tokens"},
                    "total_cost": {"$sum": "$total_cost"},
                    "avg_response_time": {"$avg": "$response_time_ms"},
                    "users": {"$addToSet": "$user_id"},
                    "providers": {"$addToSet": "$model_provider"},
                }
            },
        ]
        activity_pipeline = [
            activity_match,
            {
                "$group": {
                    "_id": {"model_provider": "$model_provider", "model_name": "$model_name"},
                    "call_count": {"$sum": 1},
                    "total_cost": {"$sum": "$total_cost"},
                }
            },
            {"$sort": {"call_count": -1}},
            {"$limit": int(top)},
        ]
        status_pipeline = [
            overview_match,
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]

        totals = await self._col.aggregate(overview_pipeline).to_list(length=1)
        activity = await self._col.aggregate(activity_pipeline).to_list(length=int(top))
        statuses = await self._col.aggregate(status_pipeline).to_list(length=None)

        overview: Dict[str, Any] = {
            "total_calls": 0,
            "total_tokens": 0,
            "total_cost": 0.0,
            "avg_response_time": None,
            "unique_users": 0,
            "unique_providers": 0,
        }
        if totals:
            t = totals[0]
            overview = {
                "total_calls": int(t.get("total_calls", 0) or 0),
                "total_tokens": int(t.get("total_tokens", 0) or 0),
                "total_cost": float(t.get("total_cost", 0) or 0),
                "avg_response_time": t.get("avg_response_time"),
                # anonymous calls do not count as a user
                "unique_users": len([u for u in t.get("users") or [] if u is not None]),
                "unique_providers": len([p for p in t.get("providers") or [] if p is not None]),
            }
        recent = [
            {**a["_id"], "call_count": int(a["call_count"]), "total_cost": float(a["total_cost"] or 0)}
            for a in activity
        ]
        breakdown = [{"status": s["_id"], "count": int(s["count"])} for s in statuses]
        breakdown.sort(key=lambda s: s["count"], reverse=True)
        return {"overview": overview, "recent_activity": recent, "status_breakdown": breakdown}


def _status_counter(status: UsageStatus) -> Dict[str, Any]:
    return {"$cond": [{"$eq": ["$status", status.value]}, 1, 0]}
