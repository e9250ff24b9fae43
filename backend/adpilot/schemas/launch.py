import enum
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TargetingInput(BaseModel):
    age_min: int | None = Field(default=None, ge=13, le=65)
    age_max: int | None = Field(default=None, ge=13, le=65)
    genders: list[int] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=lambda: ["US"])
    interests: list[str] = Field(default_factory=list)
    interest_ids: list[str] = Field(default_factory=list)


class LaunchRequest(BaseModel):
    tenant_id: UUID
    ad_account_id: str = Field(pattern=r"^act_\d+$")
    page_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=300)
    headline: str = Field(min_length=1)
    primary_text: str = Field(min_length=1)
    description: str | None = None
    cta: str = "LEARN_MORE"
    link_url: str = Field(min_length=1)
    image_url: str | None = None
    video_url: str | None = None
    daily_budget: Decimal = Field(gt=0, decimal_places=2)
    duration_days: int = Field(default=7, ge=1, le=365)
    targeting: TargetingInput = Field(default_factory=TargetingInput)

    @model_validator(mode="after")
    def _require_creative(self):
        if not self.image_url and not self.video_url:
            raise ValueError("image_url or video_url is required")
        return self


class LaunchJob(BaseModel):
    id: str
    status: JobStatus
    payload: dict
    result: dict | None = None
    error: str | None = None
    error_code: str | None = None
    created_at: float
    updated_at: float


class LaunchResult(BaseModel):
    success: bool
    campaign_id: str | None = None
    ad_set_id: str | None = None
    ad_id: str | None = None
    creative_id: str | None = None
    error: str | None = None
    code: str | None = None


class LaunchAccepted(BaseModel):
    success: bool = True
    job_id: str
    status: str = JobStatus.PROCESSING.value
