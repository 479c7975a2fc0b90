# main.py
import logging
import os
import sys
from pathlib import Path
from fastapi import FastAPI, Request, Form, Depends, HTTPException
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from sqlalchemy.orm import Session

ROOT_DIR = Path(__file__).resolve().parent
sys.path.append(str(ROOT_DIR))

import schemas
from auth import COOKIE_NAME, TOKEN_TTL, authenticate, create_access_token, get_current_user
from config import settings
from database import engine, Base, get_db, SessionLocal
from jobs import scheduler as job_scheduler
from routes import inventory, notifications, orders, splits, stores, sync_control, sync_status, webhooks
from services.errors import (BackupWarehouseError, DataIntegrityError, ExternalServiceError,
                             IllegalTransitionError, LineItemNotFoundError, NoInventoryError, OrderNotFoundError,
                             ReassignmentError, RetailOpsError, SplitNotFoundError, StoreNotFoundError,
                             SyncInProgressError, SyncSequenceError)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Retail Ops")

Base.metadata.create_all(bind=engine)

# error class -> HTTP status; first match wins
ERROR_STATUS = (
    (NoInventoryError, 422),
    (SplitNotFoundError, 404),
    (OrderNotFoundError, 404),
    (StoreNotFoundError, 404),
    (LineItemNotFoundError, 404),
    (IllegalTransitionError, 409),
    (ReassignmentError, 409),
    (BackupWarehouseError, 409),
    (SyncInProgressError, 409),
    (SyncSequenceError, 409),
    (DataIntegrityError, 409),
    (ExternalServiceError, 502),
)

@app.exception_handler(RetailOpsError)
async def retail_ops_error_handler(request: Request, exc: RetailOpsError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body = {"detail": str(exc)}
    if isinstance(exc, NoInventoryError):
        body["field"] = exc.field
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=body)

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.post("/login", response_model=schemas.Token)
def login(username: str = Form(...), password: str = Form(...), db: Session = Depends(get_db)):
    user = authenticate(db, username, password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    token = create_access_token(user.username)
    response = JSONResponse({"access_token": token, "token_type": "bearer"})
    response.set_cookie(key=COOKIE_NAME, value=token, httponly=True, samesite="lax",
                        max_age=int(TOKEN_TTL.total_seconds()), secure=True)
    return response

@app.get("/health", include_in_schema=False)
def health():
    return {"status": "ok"}

@app.get("/api/scheduler/jobs", dependencies=[Depends(get_current_user)])
def scheduler_jobs():
    return {"enabled": settings.scheduler_enabled, "jobs": job_scheduler.get_job_status()}

@app.on_event("startup")
def start_background_jobs():
    if settings.scheduler_enabled:
        job_scheduler.start_scheduler(SessionLocal)

@app.on_event("shutdown")
def stop_background_jobs():
    job_scheduler.shutdown_scheduler()

# Routers
app.include_router(sync_control.router)
app.include_router(sync_status.router)
app.include_router(orders.router)
app.include_router(splits.router)
app.include_router(inventory.router)
app.include_router(stores.router)
app.include_router(notifications.router)
app.include_router(webhooks.router)
