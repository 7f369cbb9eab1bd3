"""
Hosted-payment gateway adapters.

The settlement core only needs two things from a provider: start a charge for
an amount under a reference we generated, and later ask what became of that
charge. Providers are untrusted and eventually consistent, so every answer is
normalised into a ``ChargeStatus`` and every transport problem into
``GatewayUnavailable`` (or ``GatewayTimeout`` when the call ran out of time).
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from .config import get_settings
from .errors import GatewayTimeout, GatewayUnavailable

logger = structlog.get_logger(__name__)


class ChargeState(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


class ChargeStatus(BaseModel):
    reference: str
    state: ChargeState
    amount_paid: int = 0
    gateway_status: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def paid(self) -> bool:
        return self.state == ChargeState.PAID


class PaymentGateway(ABC):
    @abstractmethod
    def init_charge(
        self,
        amount: int,
        reference: str,
        callback_url: str,
        email: Optional[str] = None,
    ) -> str:
        """Start a hosted charge and return the URL the buyer pays at."""

    @abstractmethod
    def get_charge_status(self, reference: str) -> ChargeStatus:
        """Ask the provider what happened to the charge under ``reference``."""

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return False


# Paystack transaction states that will never turn into a successful charge.
PAYSTACK_FAILED_STATES = {"failed", "abandoned", "reversed"}


class PaystackGateway(PaymentGateway):
    """Paystack adapter. Amounts are already in kobo (minor units)."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    def init_charge(
        self,
        amount: int,
        reference: str,
        callback_url: str,
        email: Optional[str] = None,
    ) -> str:
        payload = {
            "amount": amount,
            "reference": reference,
            "callback_url": callback_url,
        }
        if email:
            payload["email"] = email

        body = self._request("POST", "/transaction/initialize", json=payload)
        authorization_url = (body.get("data") or {}).get("authorization_url")
        if not authorization_url:
            raise GatewayUnavailable(f"Paystack returned no authorization_url for {reference}")
        return authorization_url

    def get_charge_status(self, reference: str) -> ChargeStatus:
        body = self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        gateway_status = data.get("status")

        if gateway_status == "success":
            state = ChargeState.PAID
        elif gateway_status in PAYSTACK_FAILED_STATES:
            state = ChargeState.FAILED
        else:
            state = ChargeState.PENDING

        return ChargeStatus(
            reference=reference,
            state=state,
            amount_paid=int(data.get("amount") or 0),
            gateway_status=gateway_status,
            paid_at=data.get("paid_at") or None,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.secret_key:
            return False
        computed = hmac.new(self.secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed, signature)

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        if not self.secret_key:
            raise GatewayUnavailable("PAYSTACK_SECRET_KEY not configured")

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=json, headers=headers)
                response.raise_for_status()
                body = response.json()

        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", path=path, timeout=self.timeout)
            raise GatewayTimeout(f"Paystack did not answer within {self.timeout}s") from e

        except httpx.HTTPStatusError as e:
            logger.error(
                "gateway_http_error",
                path=path,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise GatewayUnavailable(f"Paystack API error: {e.response.status_code}") from e

        except httpx.RequestError as e:
            logger.error("gateway_request_error", path=path, error=str(e))
            raise GatewayUnavailable(f"Cannot reach Paystack: {e}") from e

        except ValueError as e:
            raise GatewayUnavailable("Paystack returned a non-JSON body") from e

        if not body.get("status"):
            raise GatewayUnavailable(body.get("message") or "Paystack request was not accepted")
        return body
