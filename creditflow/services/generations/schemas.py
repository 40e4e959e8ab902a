"""API request/response schemas for generation intake and admin commands."""

from datetime import datetime

from pydantic import BaseModel, Field


class GenerationCreateRequest(BaseModel):
    account_id: str = Field(min_length=1)
    credits: int | None = Field(default=None, gt=0)


class AttachTaskRequest(BaseModel):
    provider_task_id: str = Field(min_length=1)


class RetryRequest(BaseModel):
    generation_id: str = Field(min_length=1)


class GenerationResponse(BaseModel):
    generation_id: str
    account_id: str
    status: str
    provider_task_id: str | None = None
    credits_reserved: int
    credits_used: int
    retry_count: int
    error_code: str | None = None
    error_message: str | None = None
    video_url: str | None = None
    cover_url: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, generation) -> "GenerationResponse":
        return cls(
            generation_id=generation.id,
            account_id=generation.account_id,
            status=generation.status,
            provider_task_id=generation.provider_task_id,
            credits_reserved=generation.credits_reserved,
            credits_used=generation.credits_used,
            retry_count=generation.retry_count,
            error_code=generation.error_code,
            error_message=generation.error_message,
            video_url=generation.video_url,
            cover_url=generation.cover_url,
            completed_at=generation.completed_at,
        )
