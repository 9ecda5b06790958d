import logging
import math
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from ledger.errors import (
    AlreadyDueError,
    ChannelNotFoundError,
    FireTimeNotFoundError,
    ForbiddenError,
    PostNotFoundError,
    ValidationError,
)
from ledger.models import AccountRole, EntryKind, NewLedgerEntry
from ledger.service import LedgerService

from .models import AdPost, Channel, FireTime, FireTimeStatus, PostStatus

log = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PostScheduler:
    """Channels, posts and the fire times that deliver them.

    Advertisers pay when a fire time is scheduled, not when it is sent. A
    failed or cancelled delivery is never refunded implicitly; refunds go
    through ``LedgerService.reverse_entry``.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    # channels

    def register_channel(
        self,
        owner_id: UUID,
        name: str,
        destination_handle: Optional[str] = None,
        price_per_post: int = 0,
        is_verified: bool = False,
    ) -> Channel:
        owner = self.ledger.get_account(owner_id)
        if owner.role == AccountRole.ADVERTISER:
            raise ForbiddenError("Only publishers can register channels")
        if price_per_post < 0:
            raise ValidationError("price_per_post must not be negative")
        data = {
            "id": uuid4(),
            "owner_account_id": owner_id,
            "name": name,
            "destination_handle": destination_handle,
            "price_per_post": price_per_post,
            "is_verified": is_verified,
            "is_active": True,
            "posts_scheduled": 0,
            "posts_sent": 0,
            "revenue": 0,
            "created_at": datetime.now(timezone.utc),
        }
        with self.storage.transaction():
            self.storage.channels[data["id"]] = data
        return Channel(**data)

    def update_channel(
        self,
        channel_id: UUID,
        is_verified: Optional[bool] = None,
        is_active: Optional[bool] = None,
        price_per_post: Optional[int] = None,
        destination_handle: Optional[str] = None,
    ) -> Channel:
        with self.storage.transaction():
            data = self._channel_row(channel_id)
            if is_verified is not None:
                data["is_verified"] = is_verified
            if is_active is not None:
                data["is_active"] = is_active
            if price_per_post is not None:
                if price_per_post < 0:
                    raise ValidationError("price_per_post must not be negative")
                data["price_per_post"] = price_per_post
            if destination_handle is not None:
                data["destination_handle"] = destination_handle
        return Channel(**data)

    def get_channel(self, channel_id: UUID) -> Channel:
        return Channel(**self._channel_row(channel_id))

    def _channel_row(self, channel_id: UUID) -> dict:
        data = self.storage.channels.get(channel_id)
        if not data:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")
        return data

    # posts

    def create_post(self, channel_id: UUID, advertiser_id: UUID, content: str,
                    media_urls: Optional[list[str]] = None) -> AdPost:
        channel = self._channel_row(channel_id)
        self.ledger.get_account(advertiser_id)
        if not content:
            raise ValidationError("Post content must not be empty")
        data = {
            "id": uuid4(),
            "owner_account_id": channel["owner_account_id"],
            "advertiser_account_id": advertiser_id,
            "channel_id": channel_id,
            "content": content,
            "media_urls": list(media_urls or []),
            "status": PostStatus.DRAFT,
            "credits_paid": 0,
            "posted_at": None,
            "created_at": datetime.now(timezone.utc),
        }
        with self.storage.transaction():
            self.storage.posts[data["id"]] = data
        return self.get_post(data["id"])

    def get_post(self, post_id: UUID) -> AdPost:
        data = self._post_row(post_id)
        return AdPost(**data, fire_times=self.list_fire_times(post_id))

    def _post_row(self, post_id: UUID) -> dict:
        data = self.storage.posts.get(post_id)
        if not data:
            raise PostNotFoundError(f"Post {post_id} not found")
        return data

    def list_posts(self, account_id: UUID, channel_id: Optional[UUID] = None,
                   status: Optional[PostStatus] = None) -> list[AdPost]:
        """Posts in channels the account owns, plus posts it advertises."""
        posts = [
            self.get_post(p["id"]) for p in self.storage.posts.values()
            if account_id in (p["owner_account_id"], p["advertiser_account_id"])
            and (channel_id is None or p["channel_id"] == channel_id)
            and (status is None or p["status"] == status)
        ]
        posts.sort(key=lambda p: p.created_at)
        return posts

    def list_fire_times(self, post_id: UUID) -> list[FireTime]:
        rows = [FireTime(**f) for f in self.storage.fire_times.values() if f["post_id"] == post_id]
        rows.sort(key=lambda f: f.scheduled_at)
        return rows

    def _has_pending(self, post_id: UUID) -> bool:
        return any(
            f["post_id"] == post_id and f["status"].is_pending
            for f in self.storage.fire_times.values()
        )

    # fire times

    def schedule_fire_time(
        self,
        post_id: UUID,
        scheduled_at: datetime,
        actor_id: UUID,
        now: Optional[datetime] = None,
        use_granted_credits: bool = False,
    ) -> FireTime:
        """Add one delivery occurrence and charge the advertiser for it.

        Owners posting into their own channel are not charged; each such
        fire time uses one of their free posts instead.

        With ``use_granted_credits`` the spend must also fit in what the
        channel owner has granted the advertiser.
        """
        now = _aware(now or datetime.now(timezone.utc))
        scheduled_at = _aware(scheduled_at)
        if scheduled_at <= now:
            raise ValidationError("Fire time must be in the future")

        post = self._post_row(post_id)
        owner_id = post["owner_account_id"]
        advertiser_id = post["advertiser_account_id"]
        if actor_id not in (owner_id, advertiser_id):
            raise ForbiddenError(f"Account {actor_id} cannot schedule post {post_id}")

        channel = self._channel_row(post["channel_id"])
        if not channel["is_verified"]:
            raise ValidationError("Channel must be verified before scheduling posts")
        if not channel["is_active"]:
            raise ValidationError("Channel is not active")

        price = channel["price_per_post"]
        own_post = advertiser_id == owner_id
        charge = not own_post and price > 0

        with self.storage.account_lock(advertiser_id, owner_id), self.storage.transaction():
            post = self._post_row(post_id)
            channel = self._channel_row(post["channel_id"])
            if own_post:
                self._use_free_post(owner_id, channel)
            elif charge:
                self._charge(post, channel, price, use_granted_credits)

            fire_id = uuid4()
            fire = {
                "id": fire_id,
                "post_id": post_id,
                "scheduled_at": scheduled_at,
                "status": FireTimeStatus.SCHEDULED,
                "failure_reason": None,
                "claimed_by": None,
                "posted_at": None,
                "free_post": own_post,
            }
            self.storage.fire_times[fire_id] = fire
            channel["posts_scheduled"] += 1
            post["status"] = PostStatus.SCHEDULED

        log.info("fire time scheduled id=%s post=%s at=%s charged=%s free=%s",
                 fire_id, post_id, scheduled_at.isoformat(), price if charge else 0, own_post)
        return FireTime(**fire)

    def _use_free_post(self, owner_id: UUID, channel: dict) -> None:
        owner = self.ledger._account_row(owner_id)
        if owner["free_posts_used"] >= owner["free_posts_limit"]:
            raise ForbiddenError(
                f"No free posts remaining in {channel['name']}: "
                f"{owner['free_posts_used']} of {owner['free_posts_limit']} used"
            )
        owner["free_posts_used"] += 1

    def _charge(self, post: dict, channel: dict, price: int, use_granted_credits: bool) -> None:
        owner_id = channel["owner_account_id"]
        advertiser_id = post["advertiser_account_id"]

        auth = self.ledger.authorize_spend(
            advertiser_id, price,
            related_grantor_id=owner_id if use_granted_credits else None,
        )
        self.ledger.append_entry(NewLedgerEntry(
            account_id=advertiser_id,
            amount=-price,
            kind=EntryKind.SPENT,
            related_channel_id=channel["id"],
            related_post_id=post["id"],
            description=f"Paid ad in channel: {channel['name']}",
        ), authorization=auth)

        commission = self.ledger.commission_for(owner_id)
        earnings = math.floor(price * (1 - commission))
        if earnings > 0:
            self.ledger.append_entry(NewLedgerEntry(
                account_id=owner_id,
                amount=earnings,
                kind=EntryKind.EARNED,
                related_channel_id=channel["id"],
                related_post_id=post["id"],
                description=f"Earnings from paid ad in {channel['name']}",
            ))
            channel["revenue"] += earnings
        post["credits_paid"] += price

    def cancel_fire_time(self, fire_time_id: UUID, actor_id: UUID,
                         now: Optional[datetime] = None) -> AdPost:
        """Delete a future fire time. Fired ones are kept for statistics."""
        now = _aware(now or datetime.now(timezone.utc))
        with self.storage.transaction():
            fire = self.storage.fire_times.get(fire_time_id)
            if not fire:
                raise FireTimeNotFoundError(f"Fire time {fire_time_id} not found")
            post = self._post_row(fire["post_id"])
            if actor_id not in (post["owner_account_id"], post["advertiser_account_id"]):
                raise ForbiddenError(f"Account {actor_id} cannot cancel fire time {fire_time_id}")
            if fire["status"] != FireTimeStatus.SCHEDULED or fire["scheduled_at"] <= now:
                raise AlreadyDueError(f"Fire time {fire_time_id} is already due or processed")

            del self.storage.fire_times[fire_time_id]
            if not self._has_pending(post["id"]):
                post["status"] = PostStatus.DRAFT

        log.info("fire time cancelled id=%s post=%s by=%s", fire_time_id, post["id"], actor_id)
        return self.get_post(post["id"])
