"""
VTU data-bundle delivery providers (Hubnet, VTPass, ClubKonnect).

Each provider maps our carrier tags to its own network codes and normalizes its
response into DeliveryResult. Exceptions are turned into failed results by
DeliveryGateway.purchase_data / query_status.
"""
import logging
from decimal import Decimal, InvalidOperation

import requests

from billing.gateways.base import DeliveryGateway, DeliveryResult, GatewayError, ProviderBalance
from billing.services.network_service import normalize_phone

logger = logging.getLogger(__name__)


def _to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise GatewayError(f"Provider returned a non-numeric balance: {value!r}")


class HttpDeliveryGateway(DeliveryGateway):
    """Shared requests.Session plumbing for JSON VTU APIs."""

    default_base_url = ""

    def __init__(self, api_key: str, user_id: str = "", base_url: str = "", timeout: float = 30,
                 session: requests.Session = None):
        if not api_key:
            raise GatewayError(f"{self.name} is not configured: VTU_API_KEY is missing or empty.")
        self.api_key = api_key
        self.user_id = user_id
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})

    @classmethod
    def from_settings(cls, settings):
        return cls(
            api_key=settings.VTU_API_KEY,
            user_id=settings.VTU_USER_ID,
            base_url=settings.VTU_API_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _get(self, path: str, **kwargs) -> dict:
        response = self.session.get(f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response.json()

    def _post(self, path: str, payload: dict, **kwargs) -> dict:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response.json()


class HubnetGateway(HttpDeliveryGateway):
    name = "hubnet"
    default_base_url = "https://hubnet.com.gh/api"
    network_codes = {"MTN": "mtn", "TELECEL": "vodafone", "AIRTELTIGO": "airteltigo"}

    def _purchase(self, *, network, phone, plan_code, reference):
        body = self._post("/data/purchase", {
            "api_key": self.api_key,
            "network": self.network_code(network),
            "phone": normalize_phone(phone),
            "plan_id": plan_code,
            "reference": reference,
        })
        # pending means accepted for delivery
        if body.get("status") in ("success", "pending"):
            return DeliveryResult(
                success=True,
                provider_transaction_id=str(body.get("transaction_id") or body.get("reference") or ""),
                message=body.get("message") or "Data bundle sent successfully",
                raw=body,
            )
        return DeliveryResult(success=False, message=body.get("message") or "Failed to deliver data", raw=body)

    def _query(self, reference):
        body = self._get("/transaction/status", params={"api_key": self.api_key, "reference": reference})
        status = str(body.get("status") or "").lower()
        return DeliveryResult(
            success=status in ("success", "delivered", "completed"),
            provider_transaction_id=str(body.get("transaction_id") or ""),
            message=body.get("message") or status,
            raw=body,
        )

    def _balance(self):
        body = self._get("/balance", params={"api_key": self.api_key})
        return ProviderBalance(balance=_to_decimal(body.get("balance") or 0), currency="GHS")


class VTPassGateway(HttpDeliveryGateway):
    name = "vtpass"
    default_base_url = "https://vtpass.com/api"
    network_codes = {"MTN": "mtn-data", "TELECEL": "vodafone-gh", "AIRTELTIGO": "airteltigo-gh"}

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.session.auth = (self.user_id, self.api_key)

    def _purchase(self, *, network, phone, plan_code, reference):
        phone = normalize_phone(phone)
        body = self._post("/pay", {
            "serviceID": self.network_code(network),
            "billersCode": phone,
            "variation_code": plan_code,
            "phone": phone,
            "request_id": reference,
        })
        txn = (body.get("content") or {}).get("transactions") or {}
        if body.get("code") == "000" or txn.get("status") == "delivered":
            return DeliveryResult(
                success=True,
                provider_transaction_id=str(txn.get("transactionId") or body.get("requestId") or ""),
                message=body.get("response_description") or "Data sent successfully",
                raw=body,
            )
        return DeliveryResult(
            success=False,
            message=body.get("response_description") or "Transaction failed",
            raw=body,
        )

    def _query(self, reference):
        body = self._post("/requery", {"request_id": reference})
        txn = (body.get("content") or {}).get("transactions") or {}
        return DeliveryResult(
            success=body.get("code") == "000" or txn.get("status") == "delivered",
            provider_transaction_id=str(txn.get("transactionId") or ""),
            message=body.get("response_description") or str(txn.get("status") or ""),
            raw=body,
        )

    def _balance(self):
        body = self._get("/balance")
        balance = (body.get("contents") or {}).get("balance") or 0
        return ProviderBalance(balance=_to_decimal(balance), currency="NGN")


class ClubKonnectGateway(HttpDeliveryGateway):
    name = "clubkonnect"
    default_base_url = "https://www.clubkonnect.com/api"
    network_codes = {"MTN": "01", "TELECEL": "02", "AIRTELTIGO": "03"}

    def _credentials(self) -> dict:
        return {"UserID": self.user_id, "APIKey": self.api_key}

    def _purchase(self, *, network, phone, plan_code, reference):
        body = self._post("/data", {
            **self._credentials(),
            "MobileNetwork": self.network_code(network),
            "DataPlan": plan_code,
            "MobileNumber": normalize_phone(phone),
            "RequestID": reference,
        })
        if body.get("status") in ("successful", "ORDER_RECEIVED"):
            return DeliveryResult(
                success=True,
                provider_transaction_id=str(body.get("transactionId") or body.get("orderid") or ""),
                message=body.get("message") or "Data sent successfully",
                raw=body,
            )
        return DeliveryResult(success=False, message=body.get("message") or "Failed to deliver data", raw=body)

    def _query(self, reference):
        body = self._get("/query", params={**self._credentials(), "RequestID": reference})
        status = str(body.get("status") or "")
        return DeliveryResult(
            success=status in ("successful", "ORDER_COMPLETED"),
            provider_transaction_id=str(body.get("orderid") or ""),
            message=body.get("remark") or status,
            raw=body,
        )

    def _balance(self):
        body = self._get("/balance", params=self._credentials())
        return ProviderBalance(balance=_to_decimal(body.get("balance") or 0), currency="GHS")
