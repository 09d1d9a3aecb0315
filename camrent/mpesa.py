"""Client for the M-Pesa Daraja STK Push (Lipa Na M-Pesa Online) API."""
from __future__ import annotations

import base64
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
from circuitbreaker import circuit

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
COUNTRY_PREFIX = "254"


class MpesaError(Exception):
    """Raised when the gateway cannot be reached or rejects a request."""


def normalize_phone(phone_number: str) -> str:
    """Convert a local number (``07xx...``) to the ``2547xx...`` format."""

    phone = phone_number.strip().replace(" ", "").lstrip("+")
    if phone.startswith("0"):
        phone = COUNTRY_PREFIX + phone[1:]
    if not phone.startswith(COUNTRY_PREFIX):
        phone = COUNTRY_PREFIX + phone
    return phone


def format_timestamp(moment: datetime) -> str:
    return moment.strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaClient:
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    def _ensure_configured(self) -> None:
        required = (
            self.settings.mpesa_consumer_key,
            self.settings.mpesa_consumer_secret,
            self.settings.mpesa_shortcode,
            self.settings.mpesa_passkey,
            self.settings.mpesa_callback_url,
        )
        if not all(required):
            raise MpesaError("Missing M-Pesa configuration")

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.settings.mpesa_base_url,
            transport=self._transport,
            timeout=self.settings.mpesa_timeout_seconds,
        )

    def get_access_token(self, client: httpx.Client) -> str:
        credentials = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        response = client.get(
            TOKEN_PATH,
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {base64.b64encode(credentials.encode()).decode()}"},
        )
        try:
            token = response.json().get("access_token")
        except ValueError:
            token = None
        if response.status_code >= 400 or not token:
            raise MpesaError("Failed to get M-Pesa access token")
        return token

    def build_stk_payload(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        transaction_desc: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        timestamp = format_timestamp(now or datetime.utcnow())
        phone = normalize_phone(phone_number)
        shortcode = self.settings.mpesa_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": build_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

    @circuit(failure_threshold=5, recovery_timeout=60, expected_exception=httpx.TransportError)
    def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        transaction_desc: str,
    ) -> Dict[str, Any]:
        """Send an STK Push prompt to the payer's phone and return the gateway response."""

        self._ensure_configured()
        payload = self.build_stk_payload(phone_number, amount, account_reference, transaction_desc)
        with self._client() as client:
            token = self.get_access_token(client)
            logger.info("sending STK push | ref=%s | amount=%s", account_reference, payload["Amount"])
            response = client.post(
                STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise MpesaError("Invalid response from M-Pesa") from exc
        if response.status_code >= 400:
            raise MpesaError(data.get("errorMessage") or f"M-Pesa returned status {response.status_code}")
        logger.info("STK push accepted | checkout=%s", data.get("CheckoutRequestID"))
        return data


def get_mpesa_client() -> MpesaClient:
    """FastAPI dependency; overridden in tests with a mock transport."""

    return MpesaClient(get_settings())
