import hashlib
import hmac
import logging
from typing import Optional, Dict, Any

import httpx

from billingsync.core.config import settings
from billingsync.core.exceptions import RazorpayError

logger = logging.getLogger(__name__)


class RazorpayService:
    """Thin async client for the Razorpay REST API.

    Every method raises ``RazorpayError`` on failure so callers can put it
    behind the circuit breaker and the retry handler.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.razorpay_key_id
        self.key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.razorpay_webhook_secret
        self.base_url = (base_url or settings.razorpay_api_base).rstrip("/")
        self.timeout = timeout or settings.razorpay_timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        if not self.is_configured:
            raise RazorpayError("Razorpay not configured", code="NOT_CONFIGURED")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, auth=(self.key_id, self.key_secret)) as client:
                response = await client.request(method, f"{self.base_url}{endpoint}", **kwargs)
        except httpx.TimeoutException as e:
            raise RazorpayError(f"Razorpay request timed out: {endpoint}", code="TIMEOUT") from e
        except httpx.HTTPError as e:
            raise RazorpayError(f"Razorpay request failed: {str(e)}", code="NETWORK_ERROR") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        return response.json()

    @staticmethod
    def _error_from_response(response: httpx.Response) -> RazorpayError:
        try:
            error = response.json().get("error", {}) or {}
        except ValueError:
            error = {}
        return RazorpayError(
            error.get("description") or f"Razorpay returned HTTP {response.status_code}",
            status_code=response.status_code,
            code=error.get("code"),
        )

    async def create_customer(
        self,
        name: str,
        email: str,
        contact: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Create a Razorpay customer (reuses an existing one for the same email)"""
        body: Dict[str, Any] = {"name": name, "email": email, "fail_existing": "0", "notes": notes or {}}
        if contact:
            body["contact"] = contact
        return await self._request("POST", "/customers", json=body)

    async def create_subscription(
        self,
        plan_id: str,
        customer_id: str,
        total_count: int,
        notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Create a subscription for a customer"""
        return await self._request(
            "POST",
            "/subscriptions",
            json={
                "plan_id": plan_id,
                "customer_id": customer_id,
                "total_count": total_count,
                "customer_notify": 1,
                "notes": notes or {},
            },
        )

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch subscription details"""
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = False) -> Dict[str, Any]:
        """Cancel a subscription now or at the end of the current cycle"""
        return await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json={"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def create_refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        speed: str = "normal",
        notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Refund a captured payment (full refund when amount is omitted)"""
        body: Dict[str, Any] = {"speed": speed, "notes": notes or {}}
        if amount is not None:
            body["amount"] = amount
        return await self._request("POST", f"/payments/{payment_id}/refund", json=body)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify the X-Razorpay-Signature header over the raw request body"""
        if not self.webhook_secret or not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)
