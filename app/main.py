import asyncio
import os
from datetime import datetime, timedelta, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import env_flag, settings
from app.database import SessionLocal, get_db
from app.logging_config import get_logger, setup_logging
from app.models import Chat, ChatMessage, Company
from app.routers import billing, company_settings, crm, instagram_webhook, media, telegram_webhook, widget
from app.services.renewal_service import generate_upcoming_renewal_invoices

setup_logging(settings.log_level)

app = FastAPI(
    title="Assistly API",
    description="Backend service for Assistly AI assistants",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(instagram_webhook.router)
app.include_router(telegram_webhook.router)
app.include_router(widget.router)
app.include_router(billing.router)
app.include_router(company_settings.router)
app.include_router(crm.router)
app.include_router(media.router)

renewal_logger = get_logger("renewal_worker")
_renewal_worker_task: asyncio.Task | None = None


def _is_renewal_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return env_flag("RENEWAL_WORKER_ENABLED", default=True)


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    """Delay until the next daily run at hour:minute UTC."""
    target = now.replace(hour=hour % 24, minute=minute % 60, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def run_renewal_job(days_ahead: int) -> int:
    db = SessionLocal()
    try:
        processed = generate_upcoming_renewal_invoices(db, days_ahead=days_ahead)
        db.commit()
        return processed
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def _renewal_worker_loop() -> None:
    while True:
        try:
            delay = seconds_until_next_run(
                datetime.now(timezone.utc), settings.renewal_run_hour, settings.renewal_run_minute
            )
            await asyncio.sleep(delay)
            processed = await asyncio.to_thread(run_renewal_job, settings.renewal_days_ahead)
            renewal_logger.info(
                "Renewal invoices generated",
                extra={"context": {"processed": processed, "days_ahead": settings.renewal_days_ahead}},
            )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            renewal_logger.error(
                "Renewal worker loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(60)


@app.on_event("startup")
async def start_renewal_worker() -> None:
    global _renewal_worker_task
    if not _is_renewal_worker_enabled():
        return
    if _renewal_worker_task is None or _renewal_worker_task.done():
        _renewal_worker_task = asyncio.create_task(_renewal_worker_loop())
        renewal_logger.info("Renewal worker started")


@app.on_event("shutdown")
async def stop_renewal_worker() -> None:
    global _renewal_worker_task
    if _renewal_worker_task is None:
        return
    _renewal_worker_task.cancel()
    try:
        await _renewal_worker_task
    except asyncio.CancelledError:
        pass
    _renewal_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "companies": db.query(Company).count(),
        "chats": db.query(Chat).count(),
        "messages": db.query(ChatMessage).count(),
    }
