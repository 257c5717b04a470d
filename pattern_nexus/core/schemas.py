"""
Caller-facing input records.

Validated at the boundary with pydantic so malformed observations
(unknown outcome types, out-of-range scores) never reach storage.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .models import OutcomeType


class RecommendationContext(BaseModel):
    """Context that led to a recommendation."""

    installed_skills: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    time_of_day: Optional[Literal["morning", "afternoon", "evening", "night"]] = None
    day_type: Optional[Literal["weekday", "weekend"]] = None
    session_duration: Optional[float] = Field(default=None, ge=0, description="Minutes")
    recommendations_shown: Optional[int] = Field(default=None, ge=0)


class SkillFeatures(BaseModel):
    """The recommended skill. Stored and returned verbatim."""

    skill_id: str = Field(..., min_length=1, description="author/name")
    category: Optional[str] = None
    trust_tier: Optional[str] = Field(default=None, description="verified, community, experimental")
    keywords: List[str] = Field(default_factory=list)
    trigger_phrases: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)
    install_count: Optional[int] = Field(default=None, ge=0)

    @field_validator("skill_id")
    @classmethod
    def validate_skill_id(cls, v):
        if not v.strip():
            raise ValueError("skill_id must not be blank")
        return v


class Pattern(BaseModel):
    """An observed recommendation, before its outcome is attached."""

    id: Optional[str] = Field(default=None, min_length=1, description="Generated if omitted")
    context: RecommendationContext = Field(default_factory=RecommendationContext)
    skill: SkillFeatures
    original_score: float = Field(default=0.0, ge=0.0, le=1.0)
    source: Literal["search", "recommend", "install", "compare"] = "recommend"


class PatternOutcome(BaseModel):
    """What happened to a recommendation. Reward is fixed by the type."""

    type: OutcomeType
    confidence: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="For partial observations"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def reward(self) -> float:
        return self.type.reward

    @property
    def weight(self) -> float:
        """Confidence, defaulting to 1.0."""
        return 1.0 if self.confidence is None else self.confidence


class PatternQuery(BaseModel):
    """Similarity query with storage-level filters."""

    context: RecommendationContext = Field(default_factory=RecommendationContext)
    skill_id: Optional[str] = None
    category: Optional[str] = None
    min_importance: Optional[float] = Field(default=None, ge=0.0)
    outcome_type: Optional[OutcomeType] = None
    # Only accept, usage, frequent
    positive_only: bool = False
