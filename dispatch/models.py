from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class PostStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    FAILED = "FAILED"


class FireTimeStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"  # claimed by a sweep, send in flight
    SENT = "SENT"
    FAILED = "FAILED"

    @property
    def is_pending(self) -> bool:
        return self in (FireTimeStatus.SCHEDULED, FireTimeStatus.SENDING)


class Channel(BaseModel):
    id: UUID
    owner_account_id: UUID
    name: str
    destination_handle: Optional[str] = None
    price_per_post: int = 0
    is_verified: bool = False
    is_active: bool = True
    posts_scheduled: int = 0
    posts_sent: int = 0
    revenue: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FireTime(BaseModel):
    id: UUID
    post_id: UUID
    scheduled_at: datetime
    status: FireTimeStatus = FireTimeStatus.SCHEDULED
    failure_reason: Optional[str] = None
    claimed_by: Optional[UUID] = None
    posted_at: Optional[datetime] = None
    free_post: bool = False

    model_config = ConfigDict(from_attributes=True)


class AdPost(BaseModel):
    id: UUID
    owner_account_id: UUID
    advertiser_account_id: UUID
    channel_id: UUID
    content: str
    media_urls: list[str] = Field(default_factory=list)
    status: PostStatus = PostStatus.DRAFT
    credits_paid: int = 0
    posted_at: Optional[datetime] = None
    created_at: datetime
    fire_times: list[FireTime] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class RegisterChannelRequest(BaseModel):
    owner_id: UUID
    name: str
    destination_handle: Optional[str] = Field(default=None, description="Chat id or @username")
    price_per_post: int = Field(default=0, ge=0)
    is_verified: bool = False


class UpdateChannelRequest(BaseModel):
    is_verified: Optional[bool] = None
    is_active: Optional[bool] = None
    price_per_post: Optional[int] = Field(default=None, ge=0)
    destination_handle: Optional[str] = None


class CreatePostRequest(BaseModel):
    channel_id: UUID
    advertiser_id: UUID
    content: str = Field(..., min_length=1)
    media_urls: list[str] = Field(default_factory=list)


class ScheduleFireTimeRequest(BaseModel):
    actor_id: UUID
    scheduled_at: datetime
    use_granted_credits: bool = Field(default=False, description="Also require the channel owner's grants to cover the price")


class SweepResult(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Processed {self.processed} posts: {self.sent} sent, {self.failed} failed"
