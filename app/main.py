import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.database import close_db, get_db, init_db
from app.routers import admin, cases, geocoding, hospitals, notifications, responders, verification
from app.services.assignment import AssignmentEngine
from app.services.capacity_store import CapacityStore, StoreIntegrityError, TransientStoreError
from app.services.notifications import NotificationDispatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting emergency dispatch service...")
    await init_db()
    logger.info("Database initialized")

    dispatcher = NotificationDispatcher()
    await dispatcher.start()
    app.state.dispatcher = dispatcher

    engine = AssignmentEngine(CapacityStore(await get_db()), dispatcher)
    try:
        recovered = await engine.recover()
        if recovered:
            logger.warning("Released %d stranded reservations at startup", recovered)
    except TransientStoreError as e:
        logger.error("Startup reconciliation failed: %s", e)

    yield

    await dispatcher.stop()
    app.state.dispatcher = None
    await close_db()
    logger.info("Emergency dispatch service shut down")


app = FastAPI(
    title="Emergency Dispatch",
    description="Emergency case assignment and real-time notification service",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError):
    logger.warning("%s %s failed on the store: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable, retry later"})


@app.exception_handler(StoreIntegrityError)
async def store_integrity_error_handler(request: Request, exc: StoreIntegrityError):
    logger.warning("%s %s rejected by the store: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


app.include_router(cases.router)
app.include_router(hospitals.router)
app.include_router(responders.router)
app.include_router(verification.router)
app.include_router(geocoding.router)
app.include_router(admin.router)
app.include_router(notifications.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
