import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import config
from config import _current_user_id
from db import init_db
from notifications import MailNotificationPlatform
from prescriptions import PrescriptionStore
from reminders import ReminderScheduler
from routers import prescriptions as prescriptions_router
from routers import reminders as reminders_router
from security import UNSAFE_METHODS, _api_write_allowed, _with_csrf_cookie

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    owner_id = config.OWNER_ID
    store = PrescriptionStore()
    platform = MailNotificationPlatform(config.NOTIFY_EMAIL, owner_id)
    scheduler = ReminderScheduler(store, platform, owner_id=owner_id, lang=config.LANGUAGE)
    app.state.prescription_store = store
    app.state.scheduler = scheduler
    await scheduler.start()
    logger.info(
        "Reminder scheduler started for owner %s (permission %s, %d timer(s))",
        "local" if owner_id is None else owner_id,
        scheduler.permission_status,
        len(scheduler.timers),
    )
    try:
        yield
    finally:
        scheduler.shutdown()


app = FastAPI(lifespan=lifespan)
app.include_router(reminders_router.router)
app.include_router(prescriptions_router.router)


@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    path = request.url.path
    if request.method in UNSAFE_METHODS and path.startswith("/api/"):
        if not _api_write_allowed(request):
            return JSONResponse({"error": "forbidden"}, status_code=403)
    _current_user_id.set(config.OWNER_ID)
    if path in config.PUBLIC_PATHS:
        return await call_next(request)
    return _with_csrf_cookie(request, await call_next(request))


@app.get("/health")
def health():
    return {"status": "ok"}
