import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch.engine import DispatchEngine
from dispatch.models import (
    AdPost, Channel, CreatePostRequest, FireTime, PostStatus,
    RegisterChannelRequest, ScheduleFireTimeRequest, SweepResult, UpdateChannelRequest,
)
from dispatch.scheduling import PostScheduler
from dispatch.senders import RecordingSender, TelegramSender

from .config import configure_logging, get_settings
from .errors import InsufficientCreditError, LedgerServiceError
from .models import (
    Account, ApproveCreditRequest, CreateAccountRequest, CreateCreditRequest,
    CreditRequest, CreditRequestResponse, GrantCreditsRequest, GrantorCredit,
    IntegrityReport, LedgerEntry, LedgerHistoryResponse, PurchaseCreditsRequest,
    RejectCreditRequest, RequestStatus, ReverseEntryRequest, UpdatePostingTermsRequest, UserBalance,
)
from .requests import CreditRequestWorkflow
from .service import LedgerService

log = logging.getLogger(__name__)

settings = get_settings()
ledger_service = LedgerService(settings=settings)
request_workflow = CreditRequestWorkflow(ledger_service)
post_scheduler = PostScheduler(ledger_service)

if settings.TELEGRAM_BOT_TOKEN:
    sender = TelegramSender.from_token(settings.TELEGRAM_BOT_TOKEN)
else:
    sender = RecordingSender()
dispatch_engine = DispatchEngine(ledger_service.storage, sender, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.DEBUG)
    stop_event = asyncio.Event()
    task = None
    if settings.DISPATCH_ENABLED:
        task = asyncio.create_task(dispatch_engine.run_forever(stop_event))
    try:
        yield
    finally:
        stop_event.set()
        if task:
            await task
        if isinstance(sender, TelegramSender):
            await sender.close()


app = FastAPI(
    title="Channel Credits API",
    description="Credit ledger and scheduled post dispatch for monetized channels",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_CODE = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "insufficient_credit": status.HTTP_402_PAYMENT_REQUIRED,
}


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    body = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, InsufficientCreditError):
        body["global_shortfall"] = exc.global_shortfall
        body["grantor_shortfall"] = exc.grantor_shortfall
    status_code = _STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
    if status_code != status.HTTP_404_NOT_FOUND:
        log.warning("%s: %s", exc.__class__.__name__, exc)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "channel-credits"}


# accounts and ledger

@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def create_account(request: CreateAccountRequest) -> Account:
    return ledger_service.create_account(request.name, request.role)


@app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
def get_account(account_id: UUID) -> Account:
    return ledger_service.get_account(account_id)


@app.patch("/accounts/{account_id}/posting-terms", response_model=Account, tags=["Accounts"])
def update_posting_terms(account_id: UUID, request: UpdatePostingTermsRequest) -> Account:
    return ledger_service.update_posting_terms(account_id, request.free_posts_limit, request.commission_rate)


@app.get("/accounts/{account_id}/balance", response_model=UserBalance, tags=["Accounts"])
def get_account_balance(account_id: UUID) -> UserBalance:
    return ledger_service.get_balance(account_id)


@app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_account_ledger(account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return ledger_service.get_ledger_history(account_id, limit, offset)


@app.get("/accounts/{account_id}/available/{grantor_id}", tags=["Accounts"])
def get_available_from(account_id: UUID, grantor_id: UUID):
    ledger_service.get_account(account_id)
    return {
        "account_id": account_id,
        "grantor_id": grantor_id,
        "available": ledger_service.available_from(account_id, grantor_id),
        "global_balance": ledger_service.global_balance(account_id),
    }


@app.get("/accounts/{account_id}/credits-by-grantor", response_model=list[GrantorCredit], tags=["Accounts"])
def get_credits_by_grantor(account_id: UUID) -> list[GrantorCredit]:
    return ledger_service.credits_by_grantor(account_id)


@app.post("/accounts/{account_id}/purchases", response_model=LedgerEntry,
          status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def record_purchase(account_id: UUID, request: PurchaseCreditsRequest) -> LedgerEntry:
    return ledger_service.record_purchase(account_id, request.credits, request.payment_reference)


@app.post("/accounts/{account_id}/grants", response_model=LedgerEntry,
          status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def grant_credits(account_id: UUID, request: GrantCreditsRequest) -> LedgerEntry:
    return ledger_service.grant_credits(request.grantor_id, account_id, request.amount, request.notes)


@app.post("/ledger/{entry_id}/reverse", response_model=LedgerEntry, tags=["Ledger"])
def reverse_entry(entry_id: UUID, request: ReverseEntryRequest) -> LedgerEntry:
    return ledger_service.reverse_entry(entry_id, request.reason, request.performed_by)


@app.get("/ledger/integrity", response_model=IntegrityReport, tags=["Ledger"])
def check_integrity() -> IntegrityReport:
    return ledger_service.verify_integrity()


# credit requests

@app.post("/credit-requests", response_model=CreditRequest,
          status_code=status.HTTP_201_CREATED, tags=["Credit Requests"])
def create_credit_request(request: CreateCreditRequest) -> CreditRequest:
    return request_workflow.create_request(
        request.requester_id, request.amount, request.grantor_id, request.channel_id, request.reason,
    )


@app.get("/credit-requests", response_model=list[CreditRequest], tags=["Credit Requests"])
def list_credit_requests(
    requester_id: Optional[UUID] = None,
    grantor_id: Optional[UUID] = None,
    admin_pool: bool = False,
    request_status: Optional[RequestStatus] = None,
) -> list[CreditRequest]:
    if requester_id:
        return request_workflow.list_for_requester(requester_id)
    if grantor_id:
        return request_workflow.list_for_grantor(grantor_id, request_status)
    if admin_pool:
        return request_workflow.list_admin_pool(request_status)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                        detail="Pass requester_id, grantor_id or admin_pool=true")


@app.get("/credit-requests/{request_id}", response_model=CreditRequest, tags=["Credit Requests"])
def get_credit_request(request_id: UUID) -> CreditRequest:
    return request_workflow.get_request(request_id)


@app.post("/credit-requests/{request_id}/approve", response_model=CreditRequestResponse, tags=["Credit Requests"])
def approve_credit_request(request_id: UUID, request: ApproveCreditRequest) -> CreditRequestResponse:
    return request_workflow.approve(request_id, request.approver_id, request.amount, request.notes)


@app.post("/credit-requests/{request_id}/reject", response_model=CreditRequestResponse, tags=["Credit Requests"])
def reject_credit_request(request_id: UUID, request: RejectCreditRequest) -> CreditRequestResponse:
    return request_workflow.reject(request_id, request.approver_id, request.reason)


# channels and posts

@app.post("/channels", response_model=Channel, status_code=status.HTTP_201_CREATED, tags=["Channels"])
def register_channel(request: RegisterChannelRequest) -> Channel:
    return post_scheduler.register_channel(
        request.owner_id, request.name, request.destination_handle,
        request.price_per_post, request.is_verified,
    )


@app.get("/channels/{channel_id}", response_model=Channel, tags=["Channels"])
def get_channel(channel_id: UUID) -> Channel:
    return post_scheduler.get_channel(channel_id)


@app.patch("/channels/{channel_id}", response_model=Channel, tags=["Channels"])
def update_channel(channel_id: UUID, request: UpdateChannelRequest) -> Channel:
    return post_scheduler.update_channel(
        channel_id, request.is_verified, request.is_active,
        request.price_per_post, request.destination_handle,
    )


@app.post("/posts", response_model=AdPost, status_code=status.HTTP_201_CREATED, tags=["Posts"])
def create_post(request: CreatePostRequest) -> AdPost:
    return post_scheduler.create_post(request.channel_id, request.advertiser_id, request.content, request.media_urls)


@app.get("/posts", response_model=list[AdPost], tags=["Posts"])
def list_posts(account_id: UUID, channel_id: Optional[UUID] = None,
               post_status: Optional[PostStatus] = None) -> list[AdPost]:
    return post_scheduler.list_posts(account_id, channel_id, post_status)


@app.get("/posts/{post_id}", response_model=AdPost, tags=["Posts"])
def get_post(post_id: UUID) -> AdPost:
    return post_scheduler.get_post(post_id)


@app.post("/posts/{post_id}/fire-times", response_model=FireTime,
          status_code=status.HTTP_201_CREATED, tags=["Posts"])
def schedule_fire_time(post_id: UUID, request: ScheduleFireTimeRequest) -> FireTime:
    return post_scheduler.schedule_fire_time(
        post_id, request.scheduled_at, request.actor_id, use_granted_credits=request.use_granted_credits,
    )


@app.delete("/fire-times/{fire_time_id}", response_model=AdPost, tags=["Posts"])
def cancel_fire_time(fire_time_id: UUID, actor_id: UUID) -> AdPost:
    return post_scheduler.cancel_fire_time(fire_time_id, actor_id)


# dispatch

@app.post("/dispatch/run", response_model=SweepResult, tags=["Dispatch"])
async def run_dispatch(authorization: Optional[str] = Header(default=None)) -> SweepResult:
    """Run one sweep now, for deployments driven by an external cron."""
    if settings.CRON_SECRET and authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return await dispatch_engine.run_sweep()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
