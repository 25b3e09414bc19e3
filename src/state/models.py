import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from metering.tokens import compute_cost


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UsageStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"
    HALLUCINATION = "hallucination"


class RecordStateError(RuntimeError):
    """Raised when a usage record is finalized more than once."""


class UsageRecord(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    session_id: Optional[str] = None

    model_provider: str
    model_name: str
    prompt: str
    options: Dict[str, Any] = Field(default_factory=dict)

    status: UsageStatus = UsageStatus.PROCESSING
    response: Optional[str] = None
    error_message: Optional[str] = None

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost_per_input_token: float = 0.0
    cost_per_output_token: float = 0.0
    total_cost: float = 0.0

    safety_flags: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    retry_of: Optional[str] = None
    response_time_ms: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.status != UsageStatus.PROCESSING

    def _ensure_processing(self) -> None:
        if self.is_final:
            raise RecordStateError(f"record {self.id} already finalized as {self.status.value}")

    def set_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens = int(input_tokens)
        self.output_tokens = int(output_tokens)
        self.total_tokens = self.input_tokens + self.output_tokens
        self.total_cost = compute_cost(
            self.input_tokens, self.output_tokens, self.cost_per_input_token, self.cost_per_output_token
        )

    def mark_success(self, response: str, response_time_ms: int, quality_flags: Optional[List[str]] = None) -> None:
        self._ensure_processing()
        self.response = response
        self.response_time_ms = int(response_time_ms)
        if quality_flags:
            self.safety_flags["quality_issues"] = list(quality_flags)
            self.status = UsageStatus.HALLUCINATION
        else:
            self.status = UsageStatus.SUCCESS

    def mark_failure(self, error_message: str, response_time_ms: int) -> None:
        self._ensure_processing()
        self.response = None
        self.error_message = error_message
        self.response_time_ms = int(response_time_ms)
        self.set_usage(0, 0)
        self.status = UsageStatus.FAILURE

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["status"] = self.status.value
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "UsageRecord":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class PricingEntry(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(default_factory=new_id)
    provider: str
    model_name: str
    input_cost_per_1k: float = Field(ge=0)
    output_cost_per_1k: float = Field(ge=0)
    currency: Literal["USD", "EUR", "GBP"] = "USD"
    effective_date: datetime = Field(default_factory=utcnow)
    is_active: bool = True

    @property
    def cost_per_input_token(self) -> float:
        return self.input_cost_per_1k / 1000

    @property
    def cost_per_output_token(self) -> float:
        return self.output_cost_per_1k / 1000

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PricingEntry":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class FilterType(str, Enum):
    CONTENT = "content"
    COST = "cost"
    RATE = "rate"
    MODEL = "model"


class _BaseRules(BaseModel):
    # alert filters report flags but never deny
    action: Literal["block", "alert"] = "block"

    model_config = {"extra": "forbid"}


class ContentRules(_BaseRules):
    filter_type: Literal["content"] = "content"
    blocked_keywords: List[str] = Field(default_factory=list)
    max_prompt_length: Optional[int] = Field(default=None, gt=0)
    check_pii: bool = False
    block_pii: bool = False


class CostRules(_BaseRules):
    filter_type: Literal["cost"] = "cost"
    max_cost_per_call: Optional[float] = Field(default=None, ge=0)
    daily_spending_limit: Optional[float] = Field(default=None, ge=0)


class RateRules(_BaseRules):
    filter_type: Literal["rate"] = "rate"
    max_calls_per_minute: Optional[int] = Field(default=None, ge=1)
    max_calls_per_hour: Optional[int] = Field(default=None, ge=1)
    max_calls_per_day: Optional[int] = Field(default=None, ge=1)


class ModelRules(_BaseRules):
    filter_type: Literal["model"] = "model"
    allowed_models: List[str] = Field(default_factory=list)  # "provider/model"
    blocked_models: List[str] = Field(default_factory=list)


FilterRules = Annotated[
    Union[ContentRules, CostRules, RateRules, ModelRules],
    Field(discriminator="filter_type"),
]


class SafetyFilter(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    filter_type: FilterType
    rules: FilterRules
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _tag_rules(cls, data: Any) -> Any:
        # rules arrive untagged; the filter_type selects the variant
        if isinstance(data, dict):
            rules = data.get("rules")
            ftype = data.get("filter_type")
            if isinstance(ftype, FilterType):
                ftype = ftype.value
            if isinstance(rules, dict) and ftype is not None:
                data = dict(data)
                data["rules"] = {**rules, "filter_type": ftype}
        return data

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["filter_type"] = self.filter_type.value
        doc["rules"].pop("filter_type", None)
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SafetyFilter":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)
