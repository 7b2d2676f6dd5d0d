"""Tokenized-card payment gateway integrations."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib import error as urllib_error, request as urllib_request
from uuid import uuid4

from .exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)

ONECLICK_AUTHORIZE_PATH = "/rswebpaytransaction/api/oneclick/v1.2/transactions"


@dataclass(frozen=True)
class ChargeRequest:
    """Parameters of a charge against a previously registered card."""

    token_user: str
    token_username: str
    order_reference: str
    amount: int


@dataclass(frozen=True)
class ChargeResult:
    """Authorization outcome reported by the gateway."""

    success: bool
    authorization_code: Optional[str] = None
    error_message: Optional[str] = None
    response_code: Optional[int] = None


class PaymentGateway(Protocol):
    """Executes tokenized charges.

    Business declines are reported as ``ChargeResult(success=False)``; transport
    failures raise :class:`GatewayError` (or :class:`GatewayTimeoutError`).
    """

    def charge(self, request: ChargeRequest) -> ChargeResult:
        ...


class SandboxPaymentGateway(PaymentGateway):
    """Local gateway that approves every charge."""

    def charge(self, request: ChargeRequest) -> ChargeResult:
        authorization_code = uuid4().hex[:6].upper()
        logger.info(
            "Sandbox charge approved",
            extra={"order_reference": request.order_reference, "amount": request.amount},
        )
        return ChargeResult(success=True, authorization_code=authorization_code, response_code=0)


class OneclickHttpGateway(PaymentGateway):
    """Client for the Transbank Oneclick Mall authorize endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        commerce_code: str,
        child_commerce_code: str,
        api_key: str,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.commerce_code = commerce_code
        self.child_commerce_code = child_commerce_code
        self.api_key = api_key
        self.timeout = timeout

    def _build_payload(self, request: ChargeRequest) -> Dict[str, Any]:
        return {
            "username": request.token_username,
            "tbk_user": request.token_user,
            "buy_order": request.order_reference,
            "details": [
                {
                    "commerce_code": self.child_commerce_code,
                    "buy_order": f"{request.order_reference}-1",
                    "amount": request.amount,
                    "installments_number": 1,
                }
            ],
        }

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        http_request = urllib_request.Request(
            f"{self.base_url}{ONECLICK_AUTHORIZE_PATH}",
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Tbk-Api-Key-Id": self.commerce_code,
                "Tbk-Api-Key-Secret": self.api_key,
            },
        )
        try:
            with urllib_request.urlopen(http_request, timeout=self.timeout) as response:
                raw = response.read()
        except TimeoutError as exc:
            raise GatewayTimeoutError(f"no response within {self.timeout}s") from exc
        except urllib_error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise GatewayError(f"HTTP {exc.code}: {detail[:200]}") from exc
        except urllib_error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise GatewayTimeoutError(f"no response within {self.timeout}s") from exc
            raise GatewayError(str(exc.reason)) from exc

        try:
            return json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GatewayError("Malformed gateway response") from exc

    def charge(self, request: ChargeRequest) -> ChargeResult:
        payload = self._post(self._build_payload(request))
        details = payload.get("details") or []
        if not details or not isinstance(details[0], dict):
            raise GatewayError("Gateway response is missing transaction details")

        detail = details[0]
        response_code = detail.get("response_code")
        authorization_code = detail.get("authorization_code")
        if response_code == 0:
            return ChargeResult(success=True, authorization_code=authorization_code, response_code=0)

        status = detail.get("status") or "REJECTED"
        return ChargeResult(
            success=False,
            authorization_code=authorization_code,
            error_message=f"Charge rejected: status={status} response_code={response_code}",
            response_code=response_code if isinstance(response_code, int) else None,
        )


__all__ = [
    "ChargeRequest",
    "ChargeResult",
    "OneclickHttpGateway",
    "PaymentGateway",
    "SandboxPaymentGateway",
]
