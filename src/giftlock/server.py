"""Giftlock HTTP service.

Thin FastAPI layer over the gift, claim and lock services:
- Gift creation and wallet reservation
- Buyer payment reporting and cancellation
- Recipient verification, preclaim and claim
- Operator lock retry
The background scheduler and event subscription start with the app.
"""

from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from src.config import config, validate_config_for_service
from src.database import Database, db
from src.errors import GiftlockError, NoWalletAvailableError
from src.giftlock.chain import ChainClient
from src.giftlock.claims import ClaimHandler
from src.giftlock.gifts import GiftService
from src.giftlock.locking import LockCoordinator
from src.giftlock.payments import EventSubscription, PaymentObserver
from src.giftlock.reaper import ExpiryReaper
from src.giftlock.scheduler import GiftlockScheduler
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import ClaimDisclosure, Gift

logger = get_logger(__name__)


# Request bodies use the camelCase keys the mobile client sends
class CreateGiftRequest(BaseModel):
    recipientFirstName: str
    recipientLastName: str = ""
    amount: str = Field(description="Gift principal as a decimal string")
    currency: str = "MATIC"
    unlockDate: Optional[str] = Field(default=None, description="ISO-8601 timestamp")
    buyerEmail: str
    walletAddress: Optional[str] = None
    recipientWallet: Optional[str] = None
    message: str = ""


class GiftCodeRequest(BaseModel):
    giftCode: str


class ClaimRequest(BaseModel):
    giftCode: str
    userEmail: str


class PaymentReportRequest(BaseModel):
    giftCode: str
    txHash: str


def gift_to_dict(gift: Gift) -> dict:
    body = {to_camel(key): value for key, value in gift.model_dump(mode="json").items()}
    body["recipientName"] = gift.recipient_name
    return body


def disclosure_to_dict(disclosure: ClaimDisclosure) -> dict:
    return {to_camel(key): value for key, value in disclosure.model_dump(mode="json").items()}


def create_app(
    database: Optional[Database] = None,
    chain: Optional[ChainClient] = None,
    start_background: bool = True,
) -> FastAPI:
    """Build the application with its service graph.

    Args:
        database: Store to use. Defaults to one at config.database_path.
        chain: Chain client to inject. Defaults to one built from config.
        start_background: Start the scheduler and event subscription on startup.
    """
    app = FastAPI(
        title="Giftlock",
        description="Time-locked crypto gifts with custodial payment wallets",
    )

    database = database or db
    chain = chain or ChainClient()
    wallet_pool = WalletPool(database, chain)
    gift_service = GiftService(database, wallet_pool, chain)
    lock_coordinator = LockCoordinator(database, wallet_pool, chain)
    observer = PaymentObserver(database, wallet_pool, chain, lock_coordinator)
    subscription = EventSubscription(observer, chain)
    reaper = ExpiryReaper(database, wallet_pool, chain)
    claim_handler = ClaimHandler(database, wallet_pool)
    scheduler = GiftlockScheduler(observer, reaper, wallet_pool, subscription)

    app.state.database = database
    app.state.chain = chain
    app.state.wallet_pool = wallet_pool
    app.state.gift_service = gift_service
    app.state.lock_coordinator = lock_coordinator
    app.state.observer = observer
    app.state.subscription = subscription
    app.state.reaper = reaper
    app.state.claim_handler = claim_handler
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def startup():
        """Initialize database and background work on startup."""
        logger.info("Initializing Giftlock service...")
        await database.initialize()
        if start_background:
            await wallet_pool.ensure_minimum()
            scheduler.start()
        logger.info("Giftlock service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        if start_background:
            await scheduler.shutdown()

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        with CorrelationIdContext(request.headers.get("X-Correlation-Id")) as correlation_id:
            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id
            return response

    @app.exception_handler(GiftlockError)
    async def giftlock_error_handler(request: Request, exc: GiftlockError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": f"Invalid request body: {', '.join(fields) or 'malformed'}",
                "code": "VALIDATION_ERROR",
            },
        )

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "giftlock",
            "eventSubscription": "active" if subscription.active else "inactive",
            "availableWallets": await wallet_pool.count_available(),
        }

    @app.post("/gift")
    async def create_gift(request: CreateGiftRequest):
        """Create a gift and return the address the buyer must fund."""
        gift = await gift_service.create_gift(
            recipient_first_name=request.recipientFirstName,
            recipient_last_name=request.recipientLastName,
            amount=request.amount,
            currency=request.currency,
            unlock_date=request.unlockDate,
            buyer_email=request.buyerEmail,
            wallet_address=request.walletAddress,
            recipient_wallet=request.recipientWallet,
            message=request.message,
        )
        return {
            "success": True,
            "giftCode": gift.gift_code,
            "paymentAddress": gift.wallet_address,
            "amount": str(gift.amount),
            "fee": str(gift.fee),
            "gasFee": str(gift.gas_fee),
            "totalAmount": str(gift.total_amount),
            "currency": gift.currency,
            "unlockDate": gift.unlock_date.isoformat(),
            "expiryDate": gift.expiry_date.isoformat(),
        }

    @app.get("/gift/wallet")
    async def reserve_wallet():
        """Reserve a custodial wallet ahead of gift creation."""
        wallet = await wallet_pool.reserve()
        if wallet is None:
            raise NoWalletAvailableError("No wallets available. Please try again later.")
        return {"success": True, "walletAddress": wallet.address}

    @app.post("/gift/verify")
    async def verify_gift(request: GiftCodeRequest):
        summary = await claim_handler.verify(request.giftCode)
        body = {to_camel(key): value for key, value in summary.model_dump(mode="json").items()}
        return {"success": True, **body}

    @app.post("/gift/preclaim")
    async def preclaim_gift(request: ClaimRequest):
        disclosure = await claim_handler.preclaim(request.giftCode, request.userEmail)
        return {"success": True, **disclosure_to_dict(disclosure)}

    @app.post("/gift/claim")
    async def claim_gift(request: ClaimRequest):
        disclosure = await claim_handler.claim(request.giftCode, request.userEmail)
        return {"success": True, **disclosure_to_dict(disclosure)}

    @app.get("/gift/claimed")
    async def list_claimed(
        userEmail: str = Query(...),
        page: int = Query(1),
        limit: int = Query(10),
    ):
        gifts = await gift_service.list_claimed_gifts(userEmail, page, limit)
        return {"success": True, "page": page, "limit": limit, "gifts": [gift_to_dict(g) for g in gifts]}

    @app.post("/gift/payment")
    async def report_payment(request: PaymentReportRequest):
        """Buyer reports the transaction that funded the gift wallet."""
        gift = await gift_service.report_payment(request.giftCode, request.txHash)
        return {"success": True, "giftCode": gift.gift_code, "paymentStatus": gift.payment_status}

    @app.get("/gift")
    async def list_gifts(
        buyerEmail: str = Query(...),
        page: int = Query(1),
        limit: int = Query(10),
    ):
        gifts = await gift_service.list_gifts_by_buyer(buyerEmail, page, limit)
        return {"success": True, "page": page, "limit": limit, "gifts": [gift_to_dict(g) for g in gifts]}

    @app.get("/gift/{gift_code}")
    async def get_gift(gift_code: str):
        gift = await gift_service.get_gift(gift_code)
        return {"success": True, "gift": gift_to_dict(gift)}

    @app.post("/gift/{gift_code}/cancel")
    async def cancel_gift(gift_code: str):
        gift = await gift_service.cancel_gift(gift_code)
        return {"success": True, "giftCode": gift.gift_code, "status": gift.status}

    @app.post("/gift/{gift_code}/retry-lock")
    async def retry_lock(gift_code: str):
        """Operator action: one more lock attempt for a paid gift stuck before the lock."""
        gift = await lock_coordinator.retry_lock(gift_code.strip().upper())
        return {"success": True, "gift": gift_to_dict(gift)}

    return app


app = create_app()


def main() -> None:
    import uvicorn

    setup_logging(config.log_level, config.log_format)
    validate_config_for_service("server")
    logger.info(f"Starting Giftlock service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
