import logging
import math
import os
from typing import Any, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import Cookie, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel

from reconciler import app_context
from reconciler.app.routes.jobs import router as jobs_router
from reconciler.app.routes.payment_batches import router as payment_batches_router
from reconciler.app.routes.webhooks import router as webhooks_router
from reconciler.retry_jobs import (
    get_retry_job_metrics,
    shutdown_retry_scheduler,
    start_retry_scheduler,
)

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "payments_db"),
    user=os.getenv("DB_USER", "payments_user"),
    password=os.getenv("DB_PASSWORD", "payments_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("payments")


class CallerIdentity(BaseModel):
    id: str
    role: str = "user"


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_caller_from_session_token(session_token: str) -> Optional[CallerIdentity]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        logger.debug("Rejected session token: %s", exc)
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    return CallerIdentity(id=str(subject), role=str(payload.get("role") or "user"))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> CallerIdentity:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    caller = resolve_caller_from_session_token(session_token)
    if caller is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return caller


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="Payment Reconciliation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks_router)
app.include_router(jobs_router)
app.include_router(payment_batches_router)

# run: uvicorn reconciler.main:app --host 127.0.0.1 --port 8000 --reload


@app.on_event("startup")
def _start_retry_scheduler() -> None:
    start_retry_scheduler()


@app.on_event("shutdown")
def _shutdown_retry_scheduler() -> None:
    shutdown_retry_scheduler()


@app.get("/api/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/metrics/payment-retries")
def read_payment_retry_metrics() -> Dict[str, Any]:
    return get_retry_job_metrics()
