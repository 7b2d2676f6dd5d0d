"""API routes exposing subscription billing."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, status

from ..billing import BillingRunError, SubscriptionAlreadyExistsError, resolve_plan
from ..schemas.billing import (
    BillingStatsResponse,
    CancelSubscriptionRequest,
    CompleteInscriptionRequest,
    DailyBillingResponse,
    PaymentMethodStatusResponse,
    StartTrialRequest,
    SubscriptionResponse,
)
from ..services.billing import get_billing_orchestrator, get_subscription_service

logger = logging.getLogger(__name__)

OWNER_ROLE = "owner"


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from bookflow.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "bookflow":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


def _require_owner(current_user: Any, detail: str) -> None:
    if getattr(current_user, "role", None) != OWNER_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _require_member(current_user: Any, organization_id: str) -> None:
    if str(getattr(current_user, "org_id", "")) != organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this organization",
        )


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/run-daily", response_model=DailyBillingResponse)
def run_daily_billing(*, current_user=Depends(_get_current_user)) -> DailyBillingResponse:
    _require_owner(current_user, "Only owners can run billing")

    logger.info("Manual billing run requested", extra={"user_id": str(current_user.id)})
    orchestrator = get_billing_orchestrator()
    try:
        report = orchestrator.run_daily_billing()
    except BillingRunError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return DailyBillingResponse.from_report(report)


@router.get("/stats", response_model=BillingStatsResponse)
def billing_stats(*, current_user=Depends(_get_current_user)) -> BillingStatsResponse:
    _require_owner(current_user, "Only owners can view billing stats")

    service = get_subscription_service()
    return BillingStatsResponse.from_stats(service.collect_stats())


@router.get("/subscription/{organization_id}", response_model=Optional[SubscriptionResponse])
def get_subscription(
    organization_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> Optional[SubscriptionResponse]:
    _require_member(current_user, organization_id)

    subscription = get_subscription_service().get_for_organization(organization_id)
    if subscription is None:
        return None
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/cancel-subscription", response_model=SubscriptionResponse)
def cancel_subscription(
    payload: CancelSubscriptionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    _require_member(current_user, payload.organization_id)
    _require_owner(current_user, "Only owners can cancel subscriptions")

    service = get_subscription_service()
    try:
        subscription = service.cancel(payload.organization_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/start-trial", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def start_trial(
    payload: StartTrialRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    _require_member(current_user, payload.organization_id)

    customer_email = payload.customer_email or getattr(current_user, "email", None)
    if not customer_email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A billing email is required")

    service = get_subscription_service()
    try:
        subscription = service.start_trial(
            organization_id=payload.organization_id,
            plan=resolve_plan(payload.plan_id),
            customer_email=str(customer_email),
            trial_days=payload.trial_days,
        )
    except SubscriptionAlreadyExistsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/oneclick/complete-inscription", response_model=SubscriptionResponse)
def complete_inscription(
    payload: CompleteInscriptionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    _require_member(current_user, payload.organization_id)
    _require_owner(current_user, "Only owners can register a payment method")

    service = get_subscription_service()
    try:
        subscription = service.complete_inscription(
            payload.organization_id,
            user_id=payload.tbk_user,
            username=payload.username,
            inscription_token=payload.inscription_token,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/oneclick/status/{organization_id}", response_model=PaymentMethodStatusResponse)
def payment_method_status(
    organization_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> PaymentMethodStatusResponse:
    _require_member(current_user, organization_id)

    subscription = get_subscription_service().get_for_organization(organization_id)
    return PaymentMethodStatusResponse.from_subscription(subscription)
