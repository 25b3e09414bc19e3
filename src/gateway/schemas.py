from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from state.models import FilterType


class TrackOptions(BaseModel):
    """Generation options; unknown keys are kept and recorded as caller metadata."""

    model_config = ConfigDict(extra="allow")

    max_tokens: Optional[int] = Field(default=None, ge=1, le=8000)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    stop: Optional[Union[str, Annotated[List[str], Field(max_length=4)]]] = None
    stream: Optional[bool] = None
    retry_of: Optional[str] = None

    def generation(self) -> Dict[str, Any]:
        keys = ("max_tokens", "temperature", "top_p", "frequency_penalty", "presence_penalty", "stop")
        return {k: getattr(self, k) for k in keys if getattr(self, k) is not None}

    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class TrackRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=(), populate_by_name=True)

    user_id: Optional[str] = None
    team_id: Optional[str] = None
    session_id: Optional[str] = None
    model_provider: Optional[str] = None
    model_name: Optional[str] = None
    prompt: Optional[str] = None
    credential: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("credential", "api_key", "apiKey"),
        repr=False,
    )
    options: TrackOptions = Field(default_factory=TrackOptions)


class RetryRequest(BaseModel):
    credential: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("credential", "api_key", "apiKey"),
        repr=False,
    )


class UsageTotals(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class TrackResult(BaseModel):
    id: str
    response: Optional[str] = None
    error: Optional[str] = None
    usage: UsageTotals = Field(default_factory=UsageTotals)
    status: str
    response_time_ms: int = 0
    safety_flags: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


class CredentialTestRequest(BaseModel):
    provider: str
    credential: str = Field(
        min_length=10,
        validation_alias=AliasChoices("credential", "api_key", "apiKey"),
        repr=False,
    )
    model: Optional[str] = Field(default=None, validation_alias=AliasChoices("model", "modelName"))


class CredentialCheck(BaseModel):
    valid: bool
    message: str
    provider: str
    model: Optional[str] = None
    response: Optional[str] = None


class PricingUpdate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    provider: Literal["openai", "anthropic", "google"]
    model_name: str = Field(min_length=1)
    input_cost: float = Field(ge=0, le=1)
    output_cost: float = Field(ge=0, le=1)
    currency: Literal["USD", "EUR", "GBP"] = "USD"


class SafetyFilterCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    filter_type: FilterType
    rules: Dict[str, Any]
    is_active: bool = True


class SafetyFilterUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    filter_type: Optional[FilterType] = None
    rules: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class SummaryRow(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    period: Optional[str] = None
    model_provider: Optional[str] = None
    model_name: Optional[str] = None
    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_response_time: Optional[float] = None
    success_count: int = 0
    failure_count: int = 0
    hallucination_count: int = 0


class SessionCreate(BaseModel):
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    name: Optional[str] = None


class SessionCreated(BaseModel):
    session_id: str
    message: str = "Session created successfully"
    created_at: Optional[datetime] = None
