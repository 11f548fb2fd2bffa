import hashlib
import hmac
import json

from promptpay_checkout.config import Settings

WEBHOOK_SECRET = "whsec_test"
USER_ID = 1


def gateway_settings(**overrides) -> Settings:
    values = dict(
        scb_base="https://scb.test/partners/sandbox",
        scb_api_key="api_key",
        scb_api_secret="api_secret",
        scb_client_id="api_key",
        scb_client_secret="api_secret",
        scb_biller_id="123456789012345",
        scb_ref3_prefix="shop",
        scb_webhook_secret=WEBHOOK_SECRET,
        scb_timeout=5.0,
    )
    values.update(overrides)
    return Settings(**values)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(ref1: str, status: str = "SUCCESS", **extra) -> bytes:
    data = {"ref1": ref1, "status": status}
    data.update(extra)
    return json.dumps({"data": data}).encode()
