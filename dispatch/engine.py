import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

from ledger.config import Settings, get_settings
from ledger.storage import InMemoryStorage

from .models import FireTimeStatus, PostStatus, SweepResult
from .senders import MessageSender

log = logging.getLogger(__name__)


class DispatchEngine:
    """Periodic sweep that delivers due fire times.

    A sweep claims every SCHEDULED fire time due within
    ``[now, now + lookahead]`` by moving it to SENDING in one storage
    transaction, so overlapping sweeps never pick the same row. Each claimed
    row is then sent and finalized on its own; one failure never stops the
    rest of the batch, and failed sends are not retried or refunded.
    """

    def __init__(self, storage: InMemoryStorage, sender: MessageSender,
                 settings: Optional[Settings] = None):
        self.storage = storage
        self.sender = sender
        self.settings = settings or get_settings()

    @property
    def lookahead(self) -> timedelta:
        return timedelta(seconds=self.settings.DISPATCH_LOOKAHEAD_SECONDS)

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        sweep_id = uuid4()
        # storage work waits on a thread lock, keep it off the event loop
        jobs = await asyncio.to_thread(self._claim_due, now, sweep_id)

        result = SweepResult()
        for job in jobs:
            result.processed += 1
            try:
                reason = await self._deliver(job)
                if reason is None:
                    await asyncio.to_thread(self._finalize, job, sweep_id, FireTimeStatus.SENT)
                    result.sent += 1
                    continue
                await asyncio.to_thread(self._finalize, job, sweep_id, FireTimeStatus.FAILED, reason)
            except Exception as e:
                log.exception("dispatch failed fire_time=%s", job["fire_time_id"])
                reason = str(e) or e.__class__.__name__
                await asyncio.to_thread(self._release, job, sweep_id, reason)
            result.failed += 1
            result.errors.append(f"Fire time {job['fire_time_id']} (post {job['post_id']}): {reason}")

        if jobs:
            log.info("dispatch sweep %s: %s", sweep_id, result.message)
        return result

    def _claim_due(self, now: datetime, sweep_id: UUID) -> list[dict]:
        until = now + self.lookahead
        jobs = []
        with self.storage.transaction():
            for fire in self.storage.fire_times.values():
                if fire["status"] != FireTimeStatus.SCHEDULED:
                    continue
                if not now <= fire["scheduled_at"] <= until:
                    continue
                fire["status"] = FireTimeStatus.SENDING
                fire["claimed_by"] = sweep_id

                post = self.storage.posts[fire["post_id"]]
                channel = self.storage.channels[post["channel_id"]]
                jobs.append({
                    "fire_time_id": fire["id"],
                    "scheduled_at": fire["scheduled_at"],
                    "post_id": post["id"],
                    "channel_id": channel["id"],
                    "content": post["content"],
                    "media_urls": list(post["media_urls"]),
                    "destination": channel["destination_handle"],
                    "is_verified": channel["is_verified"],
                    "is_active": channel["is_active"],
                })
        jobs.sort(key=lambda j: j["scheduled_at"])
        return jobs

    async def _deliver(self, job: dict) -> Optional[str]:
        """Send one claimed job outside any lock. Returns a failure reason or None."""
        if not job["is_verified"]:
            return "Channel not verified"
        if not job["is_active"]:
            return "Channel inactive"
        if not job["destination"]:
            return "Channel has no destination handle"
        try:
            ok = await self.sender.send_message(job["destination"], job["content"], job["media_urls"])
        except Exception as e:
            log.warning("delivery failed fire_time=%s err=%s", job["fire_time_id"], e)
            return str(e) or e.__class__.__name__
        if not ok:
            return "Delivery rejected by messaging service"
        return None

    def _finalize(self, job: dict, sweep_id: UUID, status: FireTimeStatus,
                  reason: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc)
        with self.storage.transaction():
            fire = self.storage.fire_times.get(job["fire_time_id"])
            if not fire or fire["claimed_by"] != sweep_id or fire["status"] != FireTimeStatus.SENDING:
                log.warning("lost claim on fire_time=%s", job["fire_time_id"])
                return
            fire["status"] = status
            post = self.storage.posts[job["post_id"]]
            if status == FireTimeStatus.SENT:
                fire["posted_at"] = now
                post["posted_at"] = now
                self.storage.channels[job["channel_id"]]["posts_sent"] += 1
            else:
                fire["failure_reason"] = reason
            self._rollup(post)

    def _release(self, job: dict, sweep_id: UUID, reason: str) -> None:
        """Move a claimed row whose finalize failed to FAILED so it does not stay SENDING."""
        try:
            with self.storage.transaction():
                fire = self.storage.fire_times.get(job["fire_time_id"])
                if not fire or fire["claimed_by"] != sweep_id or fire["status"] != FireTimeStatus.SENDING:
                    return
                fire["status"] = FireTimeStatus.FAILED
                fire["failure_reason"] = f"Finalize failed: {reason}"
                post = self.storage.posts.get(job["post_id"])
                if post:
                    self._rollup(post)
        except Exception:
            log.exception("fire_time=%s left SENDING by sweep %s", job["fire_time_id"], sweep_id)

    def _rollup(self, post: dict) -> None:
        statuses = [f["status"] for f in self.storage.fire_times.values() if f["post_id"] == post["id"]]
        if any(s.is_pending for s in statuses):
            return
        if FireTimeStatus.SENT in statuses:
            post["status"] = PostStatus.SENT
        else:
            post["status"] = PostStatus.FAILED

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        interval = self.settings.DISPATCH_INTERVAL_SECONDS
        log.info("dispatch loop started interval=%ss lookahead=%s", interval, self.lookahead)
        while not stop_event.is_set():
            try:
                await self.run_sweep()
            except Exception as e:
                log.exception("dispatch sweep failed: %s", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("dispatch loop stopped")
