from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FREE_PRICE_TOKENS = ("0", "0.0")


class ModelCategory(str, Enum):
    CODING = "coding"
    REASONING = "reasoning"
    SPEED = "speed"
    MULTIMODAL = "multimodal"
    WRITING = "writing"


class CostTier(str, Enum):
    CONFIRMED_FREE = "CONFIRMED_FREE"
    CONFIRMED_PAID = "CONFIRMED_PAID"
    FREEMIUM_LIMITED = "FREEMIUM_LIMITED"
    UNKNOWN = "UNKNOWN"


class FleetMode(str, Enum):
    ULTRA_FREE = "ultra_free"
    BALANCED = "balanced"
    SOTA_ONLY = "SOTA_only"


class TaskType(str, Enum):
    CODE_GENERATION = "code_generation"
    CODE_REVIEW = "code_review"
    DEBUGGING = "debugging"
    REASONING = "reasoning"
    MATH = "math"
    WRITING = "writing"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    MULTIMODAL = "multimodal"
    GENERAL = "general"


def _to_price_token(value: Any) -> Any:
    # Providers report prices as "0", 0, 0.0 or omit them entirely.
    if value is None or isinstance(value, str):
        return value
    return str(value)


class Pricing(BaseModel):
    prompt: str = "0"
    completion: str = "0"
    request: str = "0"

    @field_validator("prompt", "completion", "request", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        return _to_price_token(value)


class ProviderPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: Optional[str] = None
    completion: Optional[str] = None
    request: Optional[str] = None

    @field_validator("prompt", "completion", "request", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        return _to_price_token(value)

    def is_zero(self) -> bool:
        """True when both prompt and completion are explicitly priced at zero."""
        return self.prompt in FREE_PRICE_TOKENS and self.completion in FREE_PRICE_TOKENS


class ProviderModel(BaseModel):
    """A provider-native catalog entry, reduced to the fields the fleet understands."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    context_length: Optional[int] = None
    max_output_tokens: Optional[int] = None
    pricing: Optional[ProviderPricing] = None
    serverless_free: bool = False
    owned_by: Optional[str] = None


class FreeModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    name: str
    description: Optional[str] = None
    context_length: Optional[int] = None
    max_output_tokens: Optional[int] = None
    pricing: Pricing = Field(default_factory=Pricing)
    is_free: bool
    is_elite: bool = False
    category: ModelCategory = ModelCategory.WRITING
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    tier: CostTier = CostTier.UNKNOWN

    @model_validator(mode="after")
    def _free_models_are_never_paid(self) -> "FreeModel":
        if self.is_free and self.tier not in (CostTier.CONFIRMED_FREE, CostTier.FREEMIUM_LIMITED):
            raise ValueError(f"Free model {self.id} cannot carry tier {self.tier.value}")
        return self

    @property
    def qualified_id(self) -> str:
        return f"{self.provider}/{self.id}"


class ModelMetadata(BaseModel):
    id: str
    provider: str
    name: str
    is_free: bool
    tier: CostTier
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str
    last_verified: Optional[datetime] = None
    pricing: Pricing = Field(default_factory=Pricing)


class ScrapedPolicy(BaseModel):
    provider_id: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_free_tier_active: bool
    free_models: List[str] = Field(default_factory=list)
    raw_text: Optional[str] = None

    def covers(self, model_id: str) -> bool:
        if not self.is_free_tier_active:
            return False
        wanted = model_id.lower()
        return any(m.lower() == wanted for m in self.free_models)


class ScoutResult(BaseModel):
    category: ModelCategory
    models: List[FreeModel]
    ranked_models: List[FreeModel]
    elite_models: List[FreeModel]


class CategoryConfig(BaseModel):
    model: str
    fallback: List[str] = Field(default_factory=list)
    description: str = ""


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_key: Optional[str] = Field(None, alias="apiKey")
    base_url: Optional[str] = Field(None, alias="baseUrl")


class HostConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    categories: Dict[str, CategoryConfig] = Field(default_factory=dict)


class DelegationConfig(BaseModel):
    mode: FleetMode = FleetMode.BALANCED
    race_count: int = Field(5, ge=1)
    transparent_mode: bool = False
    # -1 means unlimited waves
    fallback_depth: int = Field(3, ge=-1)
    task_type_overrides: Dict[TaskType, FleetMode] = Field(default_factory=dict)


class RaceResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str
    result: Any
    duration: float


class ModelMetrics(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    total_calls: int = 0
    success_count: int = 0
    failure_count: int = 0
    avg_latency_ms: float = 0.0
    total_tokens_used: int = 0
    last_used: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionMetrics(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    session_id: str
    start_time: datetime
    delegation_count: int
    tokens_saved: int
    cost_saved: float
    model_breakdown: Dict[str, ModelMetrics]


class DelegationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    task_type: TaskType
    category: ModelCategory
    winner: str
    result: Any
    latency_ms: float
    models_raced: int


# Curated lineages known to lead benchmark performance per category.
ELITE_FAMILIES: Dict[ModelCategory, List[str]] = {
    ModelCategory.CODING: [
        "qwen-2.5-coder",
        "qwen3-coder",
        "deepseek-coder",
        "deepseek-v3",
        "llama-3.3-70b",
        "llama-3.3",
        "codestral",
        "starcoder",
    ],
    ModelCategory.REASONING: [
        "deepseek-r1",
        "deepseek-reasoner",
        "qwq",
        "qwq-32b",
        "o1-open",
        "o3-mini",
        "reasoning",
        "r1",
    ],
    ModelCategory.SPEED: [
        "mistral-small",
        "haiku",
        "flash",
        "gemma-2",
        "gemma-3",
        "distill",
        "nano",
        "lite",
    ],
    ModelCategory.MULTIMODAL: ["vl", "vision", "molmo", "nemotron-vl", "pixtral", "qwen-vl"],
    ModelCategory.WRITING: ["trinity", "qwen-next", "chimera", "writer"],
}

# Keyword rules for functional categorization, checked in this order.
CATEGORY_KEYWORDS: Dict[ModelCategory, List[str]] = {
    ModelCategory.CODING: ["coder", "code", "function"],
    ModelCategory.REASONING: ["r1", "reasoning", "cot", "qwq"],
    ModelCategory.SPEED: ["flash", "distill", "nano", "lite", "small", "instant", "haiku"],
    ModelCategory.MULTIMODAL: ["vl", "vision", "molmo", "pixtral"],
}


def is_elite(model_id: str, category: ModelCategory) -> bool:
    lowered = model_id.lower()
    return any(pattern in lowered for pattern in ELITE_FAMILIES.get(category, []))


def matching_categories(model_id: str) -> List[ModelCategory]:
    """All keyword categories a model id matches, falling back to writing."""
    lowered = model_id.lower()
    matches = [cat for cat, keywords in CATEGORY_KEYWORDS.items() if any(k in lowered for k in keywords)]
    return matches or [ModelCategory.WRITING]
