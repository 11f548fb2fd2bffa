"""Client for the SCB partner API (OAuth token, QR30 creation, inquiries).

All calls go through one ``requests.Session`` with a network timeout. Failures
surface as ``GatewayAuthError`` / ``GatewayRequestError``; a gateway that
reports maintenance raises ``GatewayMaintenanceError`` so callers can decide
whether to fall back.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import requests

from promptpay_checkout.checksum import has_valid_checksum
from promptpay_checkout.codec import format_amount, sanitize_reference
from promptpay_checkout.config import Settings
from promptpay_checkout.errors import (
    ConfigurationError,
    GatewayAuthError,
    GatewayMaintenanceError,
    GatewayRequestError,
    InvalidReference,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = 1000
MAINTENANCE_CODE = 9990
# Fallback heuristic for responses that do not carry the documented code
MAINTENANCE_PATTERN = re.compile(r"9990|service not available|maintenance", re.IGNORECASE)
PAID_STATUSES = frozenset({"PAID", "SUCCESS"})
TOKEN_EXPIRY_SKEW = 60


@dataclass
class QrCode:
    mode: str
    transaction_id: Optional[str]
    qr_id: Optional[str]
    qr_image_url: Optional[str] = None
    qr_raw_data: Optional[str] = None
    raw: Any = field(default=None, repr=False)


@dataclass
class TransactionStatus:
    status: str
    raw: Any = field(default=None, repr=False)
    reference: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES


def _envelope(body: Any) -> Any:
    if isinstance(body, dict) and body.get("data") is not None:
        return body["data"]
    return body


def _pick(body: Any, *keys: str) -> Optional[Any]:
    """First non-empty value under ``data`` or at top level."""
    for source in (_envelope(body), body):
        if isinstance(source, dict):
            for key in keys:
                if source.get(key) not in (None, ""):
                    return source[key]
    return None


def _status_code(body: Any) -> Optional[int]:
    status = body.get("status") if isinstance(body, dict) else None
    if isinstance(status, dict):
        try:
            return int(status.get("code"))
        except (TypeError, ValueError):
            return None
    return None


def is_maintenance(body: Any, text: str = "") -> bool:
    if _status_code(body) == MAINTENANCE_CODE:
        return True
    return bool(MAINTENANCE_PATTERN.search(text or ""))


def normalize_status(body: Any) -> TransactionStatus:
    data = _envelope(body)
    if isinstance(data, list):
        data = data[0] if data else {}
    status = ""
    reference = None
    if isinstance(data, dict):
        for key in ("status", "transactionStatus"):
            # the envelope also has a {code, description} "status" object
            if isinstance(data.get(key), str) and data[key]:
                status = data[key]
                break
        reference = data.get("billPaymentRef1") or data.get("ref1") or data.get("reference1")
    return TransactionStatus(
        status=status.strip().upper() or "PENDING",
        raw=data,
        reference=str(reference) if reference else None,
    )


def verify_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 check accepting a base64 or hex encoded signature."""
    if not signature or not secret:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()

    given = signature.strip()
    candidates = []
    try:
        decoded = base64.b64decode(given, validate=True)
    except (binascii.Error, ValueError):
        pass
    else:
        # only the canonical encoding counts, spare low bits must be zero
        if base64.b64encode(decoded).decode("ascii") == given:
            candidates.append(decoded)
    try:
        decoded = bytes.fromhex(given)
    except ValueError:
        pass
    else:
        if given in (decoded.hex(), decoded.hex().upper()):
            candidates.append(decoded)
    return any(
        len(candidate) == len(expected) and hmac.compare_digest(candidate, expected)
        for candidate in candidates
    )


class ScbClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        if not settings.scb_api_key or not settings.scb_api_secret:
            raise ConfigurationError("SCB_API_KEY and SCB_API_SECRET must be set")
        if not re.fullmatch(r"\d{15}", settings.scb_biller_id or ""):
            raise ConfigurationError("SCB_BILLER_ID must be 15 digits")
        self.settings = settings
        self.base_url = settings.scb_base.rstrip("/")
        self.timeout = settings.scb_timeout
        self.ref3_prefix = sanitize_reference(settings.scb_ref3_prefix)
        self._session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _headers(self, access_token: Optional[str] = None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "resourceOwnerId": self.settings.scb_api_key,
            "requestUId": uuid.uuid4().hex,
            "accept-language": "EN",
        }
        if access_token:
            headers["authorization"] = f"Bearer {access_token}"
        return headers

    def _post(self, path: str, body: dict, access_token: Optional[str] = None,
              error_cls=GatewayRequestError, action: str = "request") -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.post(
                url, json=body, headers=self._headers(access_token), timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error("SCB %s failed: %s", action, e)
            raise error_cls(f"SCB network error during {action}: {e}")

        text = response.text
        try:
            payload = response.json()
        except ValueError:
            payload = None

        code = _status_code(payload)
        if not response.ok or (code is not None and code != SUCCESS_CODE):
            logger.error("SCB %s error: %s %s", action, response.status_code, text)
            message = f"SCB {action} error: {response.status_code} {text}"
            if is_maintenance(payload, text):
                raise GatewayMaintenanceError(message, response.status_code, payload or text)
            raise error_cls(message, response.status_code, payload or text)
        if payload is None:
            raise error_cls(f"SCB {action} returned a malformed response", response.status_code, text)
        return payload

    def get_access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            body = self._post(
                "/v1/oauth/token",
                {
                    "applicationKey": self.settings.scb_client_id or self.settings.scb_api_key,
                    "applicationSecret": self.settings.scb_client_secret or self.settings.scb_api_secret,
                },
                error_cls=GatewayAuthError,
                action="token",
            )

            token = _pick(body, "accessToken")
            if not token:
                raise GatewayAuthError("SCB token missing in response", upstream_body=body)

            expires_in = _pick(body, "expiresIn")
            try:
                ttl = float(expires_in) - TOKEN_EXPIRY_SKEW
            except (TypeError, ValueError):
                ttl = 0
            if ttl > 0:
                self._token, self._token_expires_at = token, time.monotonic() + ttl
            else:
                self._token, self._token_expires_at = None, 0.0
            return token

    def create_qr(self, amount: Decimal, ref1: str, ref2: str, ref3: str = "",
                  version: int = 2, access_token: Optional[str] = None) -> QrCode:
        """Create a QR30 bill payment. v1 answers raw payload text, v2 an image URL."""
        amount_text = format_amount(amount)
        ref1, ref2 = sanitize_reference(ref1), sanitize_reference(ref2)
        ref3 = sanitize_reference(f"{self.ref3_prefix}{ref3 or ''}")
        if not ref1:
            raise InvalidReference("ref1 is required")
        # the merchant profile uses two references, so ref2 is mandatory
        if not ref2:
            raise InvalidReference("ref2 is required")

        body = {
            "qrType": "PP",
            "ppType": "BILLERID",
            "ppId": self.settings.scb_biller_id,
            "ref1": ref1,
            "ref2": ref2,
            "ref3": ref3,
        }
        token = access_token or self.get_access_token()

        if version == 1:
            body["amount"] = amount_text
            if self.settings.scb_callback_url:
                body["merchantMetaData"] = {"callbackUrl": self.settings.scb_callback_url}
            raw = self._post("/v1/payment/qrcode/create", body, token, action="create QR v1")
            qr_raw_data = _pick(raw, "qrRawData")
            if qr_raw_data and not has_valid_checksum(qr_raw_data):
                raise GatewayRequestError("SCB returned a QR payload with a bad checksum", upstream_body=raw)
            return QrCode(
                mode="v1",
                transaction_id=_pick(raw, "transactionId"),
                qr_id=_pick(raw, "qrId"),
                qr_raw_data=qr_raw_data,
                raw=raw,
            )

        body["amount"] = float(amount_text)
        raw = self._post("/v2/payment/qrcode/create", body, token, action="create QR v2")
        return QrCode(
            mode="v2",
            transaction_id=_pick(raw, "transactionId"),
            qr_id=_pick(raw, "qrId"),
            qr_image_url=_pick(raw, "qrImageUrl"),
            raw=raw,
        )

    def create_payment_qr(self, amount: Decimal, ref1: str, ref2: str, ref3: str = "",
                          version: int = 2, access_token: Optional[str] = None) -> QrCode:
        """Create a QR with the preferred version, retrying once on v1 during maintenance."""
        token = access_token or self.get_access_token()
        try:
            return self.create_qr(amount, ref1, ref2, ref3, version=version, access_token=token)
        except GatewayMaintenanceError as e:
            if version == 1:
                raise
            logger.warning("SCB QR v%s unavailable (%s), falling back to v1", version, e.upstream_status)
            return self.create_qr(amount, ref1, ref2, ref3, version=1, access_token=token)

    def inquiry_transaction_status(self, transaction_id: str) -> TransactionStatus:
        raw = self._post(
            "/v2/payment/billpayment/inquiry",
            {"transactionId": transaction_id},
            self.get_access_token(),
            action="inquiry",
        )
        return normalize_status(raw)

    def inquiry_by_reference(self, ref1: str, ref2: str) -> TransactionStatus:
        raw = self._post(
            "/v3/payment/billpayment/inquiry",
            {"reference1": sanitize_reference(ref1), "reference2": sanitize_reference(ref2)},
            self.get_access_token(),
            action="inquiry",
        )
        return normalize_status(raw)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(self.settings.webhook_secret, raw_body, signature)
