"""Payment gateway used when finalizing registrations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import httpx

from signup_pilot.errors import TransportFailure
from signup_pilot.utils.logging import get_logger

if TYPE_CHECKING:
    from signup_pilot.providers.base import SessionCandidate

logger = get_logger("providers.payments")


@dataclass(frozen=True)
class PaymentResult:
    """Result of a charge."""

    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class PaymentGateway(ABC):
    """Charges the parent; the business rules live behind this interface."""

    @abstractmethod
    async def charge_service_fee(self, attempt_id: str, user_id: str) -> PaymentResult:
        """Charge only the platform's own service fee."""
        ...

    @abstractmethod
    async def submit_provider_payment(
        self,
        attempt_id: str,
        user_id: str,
        candidate: "SessionCandidate",
    ) -> PaymentResult:
        """Pay the provider on the parent's behalf."""
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None


class HttpPaymentGateway(PaymentGateway):
    """JSON-over-HTTP payment service client."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        service_fee_cents: int = 2000,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.service_fee_cents = service_fee_cents
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def _post(self, path: str, body: dict[str, Any]) -> PaymentResult:
        try:
            response = await self._client.post(
                f"{self.api_url}{path}",
                json=body,
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise TransportFailure("payments", str(e) or type(e).__name__) from e

        if response.status_code >= 500:
            raise TransportFailure(
                "payments",
                f"{path} failed",
                status_code=response.status_code,
            )

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not response.is_success or not data.get("success", False):
            error = data.get("error") or f"Payment rejected ({response.status_code})"
            logger.warning("payment_rejected", path=path, error=error)
            return PaymentResult(success=False, error=error)

        return PaymentResult(success=True, reference=data.get("reference"))

    async def charge_service_fee(self, attempt_id: str, user_id: str) -> PaymentResult:
        return await self._post("/charges/service-fee", {
            "attempt_id": attempt_id,
            "user_id": user_id,
            "amount_cents": self.service_fee_cents,
        })

    async def submit_provider_payment(
        self,
        attempt_id: str,
        user_id: str,
        candidate: "SessionCandidate",
    ) -> PaymentResult:
        return await self._post("/charges/provider", {
            "attempt_id": attempt_id,
            "user_id": user_id,
            "session": candidate.to_dict(),
        })

    async def aclose(self) -> None:
        await self._client.aclose()
