from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
from fastapi import HTTPException
import uuid
import hmac
import hashlib
import base64
import orjson
from . import config
from .model.webhook import PaymentCallback

# provider spellings we accept from the emitter / other adapters
_STATUS_ALIASES = {"succeeded": "paid", "cancelled": "canceled"}


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    def create_session_id_and_url(self) -> CreateSessionResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    def parse(self, event: dict) -> PaymentCallback: ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"

    def __init__(self, secret: str = config.MOCK_SECRET):
        self.secret = secret

    def create_session_id_and_url(self) -> CreateSessionResult:
        pid = f"mock_{uuid.uuid4().hex}"
        return {"payment_id": pid, "redirect_url": f"/mockpay/{pid}"}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, payment_id: str, order_id: str, status: str,
                    amount: int, currency: str,
                    event_id: Optional[str] = None) -> Dict[str, Any]:
        event = {
            "type": f"payment.{status}",
            "payment_id": payment_id,
            "order_id": order_id,
            "amount": int(amount),
            "currency": currency,
        }
        if event_id:
            event["id"] = event_id
        return event

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        return event

    def parse(self, event: dict) -> PaymentCallback:
        pid = event.get("payment_id") or ""
        if not pid:
            raise HTTPException(400, detail="missing payment_id")
        status = (event.get("type") or "").split(".")[-1].lower()
        status = _STATUS_ALIASES.get(status, status)
        amount = event.get("amount")
        return PaymentCallback(
            provider=self.name,
            provider_payment_id=pid,
            status=status,
            order_id=event.get("order_id") or None,
            provider_event_id=event.get("id") or None,
            amount=int(amount) if amount is not None else None,
            currency=event.get("currency"),
            payload=event,
        )


def new_adapter(provider: str = config.PAYMENT_PROVIDER) -> PaymentAdapter:
    if provider == "mockpay":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_PROVIDER {provider!r}")
