import logging
import secrets
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from jobs import JobRunner
from models import User
from scheduler import SchedulerManager


logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Ledger Jobs")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def get_runner() -> JobRunner:
    return scheduler_manager.runner


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = get_settings().cron_secret
    if not secret:
        logger.warning("cron_secret_unset: rejecting request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not authorization or not secrets.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _ping_database(db: Session) -> bool:
    try:
        db.execute(select(User.id).limit(1)).first()
    except SQLAlchemyError:
        logger.exception("wakeup_db_error")
        return False
    return True


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/cron", dependencies=[Depends(require_cron_secret)])
def cron_wakeup(db: Session = Depends(get_db)):
    if not _ping_database(db):
        return JSONResponse({"error": "db error"}, status_code=500)
    return {"ok": True, "version": APP_VERSION}


@app.get("/api/wakeup")
def wakeup(db: Session = Depends(get_db)):
    if not _ping_database(db):
        return JSONResponse({"error": "db error"}, status_code=500)
    return {"ok": True}


@app.post("/api/events/recurring", dependencies=[Depends(require_cron_secret)])
def recurring_event(
    payload: Optional[dict[str, Any]] = Body(default=None),
    runner: JobRunner = Depends(get_runner),
):
    outcome = runner.process_recurring_transaction(payload)
    if "error" in outcome:
        return JSONResponse(outcome, status_code=400)
    return outcome


@app.post("/api/jobs/{name}", dependencies=[Depends(require_cron_secret)])
def run_job(name: str, runner: JobRunner = Depends(get_runner)):
    handlers = {
        "recurring": runner.trigger_recurring_transactions,
        "reports": runner.generate_monthly_reports,
        "budgets": runner.check_budget_alerts,
    }
    handler = handlers.get(name)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    return handler()
