import logging
import math
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel

from bookflow import app_context
from bookflow.app.routes.billing import router as billing_router
from bookflow.app.services.billing import (
    get_billing_config,
    get_subscription_repository,
    set_email_provider_factory,
)
from bookflow.billing_scheduler import (
    get_billing_metrics,
    shutdown_billing_scheduler,
    start_billing_scheduler,
)
from bookflow.mail import EmailConfig, EmailProvider, create_email_provider, load_email_config
from bookflow.settings import env_bool, env_float, env_int


load_dotenv()

def _connect_timeout() -> int:
    timeout = env_float(os.environ, "DB_CONNECT_TIMEOUT", default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=env_int(os.environ, "DB_PORT", default=5432),
    dbname=os.getenv("DB_NAME", "bookflow"),
    user=os.getenv("DB_USER", "bookflow"),
    password=os.getenv("DB_PASSWORD", "bookflow"),
    connect_timeout=_connect_timeout(),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXP_MINUTES = env_int(os.environ, "JWT_EXP_MINUTES", default=60 * 24 * 7)
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
BILLING_ENSURE_SCHEMA = env_bool(os.environ, "BILLING_ENSURE_SCHEMA", default=False)

logger = logging.getLogger("bookflow")

EMAIL_CONFIG: EmailConfig = load_email_config()

_email_provider: EmailProvider = create_email_provider(EMAIL_CONFIG)


def get_email_provider() -> EmailProvider:
    return _email_provider


def set_email_provider(provider: EmailProvider) -> None:
    global _email_provider
    _email_provider = provider
    set_email_provider_factory(get_email_provider)


def get_conn():
    return psycopg2.connect(**DB_CFG)


class CurrentUser(BaseModel):
    id: str
    org_id: Optional[str] = None
    role: str = "member"
    email: Optional[str] = None


def create_access_token(
    *,
    subject: str,
    org_id: Optional[str] = None,
    role: str = "member",
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    payload: Dict[str, Any] = {"sub": subject, "role": role}
    if org_id is not None:
        payload["org_id"] = org_id
    if email is not None:
        payload["email"] = email
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_EXP_MINUTES)
    payload["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def resolve_user_from_session_token(session_token: str) -> Optional[CurrentUser]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    subject = payload.get("sub")
    if subject is None:
        return None
    return CurrentUser(
        id=str(subject),
        org_id=payload.get("org_id"),
        role=payload.get("role") or "member",
        email=payload.get("email"),
    )


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> CurrentUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app_context.configure(get_conn=get_conn)
set_email_provider_factory(get_email_provider)

app = FastAPI(title="BookFlow Billing API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("APP_BASE_URL", "http://localhost:5173")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.on_event("startup")
def _start_billing() -> None:
    if BILLING_ENSURE_SCHEMA:
        get_subscription_repository().ensure_schema()
    config = get_billing_config()
    if config.scheduler_enabled:
        start_billing_scheduler(config.run_hour_utc)
    else:
        logger.info("Billing scheduler disabled")


@app.on_event("shutdown")
def _shutdown_billing_scheduler() -> None:
    shutdown_billing_scheduler()


@app.get("/api/auth/me", response_model=CurrentUser)
def read_current_user(current_user: CurrentUser = Depends(get_current_user)):
    return current_user

@app.get("/api/healthz")
def healthz():
    return {"ok": True}

@app.get("/api/metrics/billing")
def read_billing_metrics() -> Dict[str, Any]:
    return get_billing_metrics()
