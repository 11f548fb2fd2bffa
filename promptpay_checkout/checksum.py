"""CRC-16/CCITT-FALSE and EMVCo PromptPay payloads.

EMVCo QR payloads end with the tag ``63`` of length ``04`` whose value is the
CRC of everything before it, the ``6304`` prefix included.
"""

import re
from decimal import Decimal
from typing import Optional

from promptpay_checkout.codec import format_amount
from promptpay_checkout.errors import InvalidReference

CRC_TAG = "6304"
PROMPTPAY_AID = "A000000677010111"

_HEX4 = re.compile(r"^[0-9A-Fa-f]{4}$")


def crc16(payload: str, uppercase: bool = True) -> str:
    """CRC-16/CCITT-FALSE (poly 0x1021, init 0xFFFF, MSB first) as 4 hex digits."""
    crc = 0xFFFF
    for char in payload:
        crc ^= (ord(char) & 0xFF) << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    digest = f"{crc:04x}"
    return digest.upper() if uppercase else digest


def append_checksum(payload: str) -> str:
    if not payload.endswith(CRC_TAG):
        payload += CRC_TAG
    return payload + crc16(payload)


def has_valid_checksum(payload: Optional[str]) -> bool:
    if not payload or len(payload) < 8:
        return False
    body, given = payload[:-4], payload[-4:]
    if not body.endswith(CRC_TAG) or not _HEX4.match(given):
        return False
    return crc16(body) == given.upper()


def _field(tag: str, value: str) -> str:
    return f"{tag}{len(value):02d}{value}"


def _proxy(target: str) -> str:
    digits = re.sub(r"\D", "", target or "")
    if len(digits) >= 15:
        return _field("03", digits[:15])  # e-wallet id
    if len(digits) == 13:
        return _field("02", digits)  # national id / tax id
    if len(digits) == 10 and digits.startswith("0"):
        return _field("01", "0066" + digits[1:])  # mobile number
    raise InvalidReference(f"Unsupported PromptPay id: {target!r}")


def promptpay_payload(target: str, amount: Optional[Decimal] = None) -> str:
    """Build a PromptPay (tag 29) payload for a mobile, national or e-wallet id."""
    parts = [
        _field("00", "01"),
        _field("01", "12" if amount is not None else "11"),
        _field("29", _field("00", PROMPTPAY_AID) + _proxy(target)),
        _field("58", "TH"),
        _field("53", "764"),
    ]
    if amount is not None:
        parts.append(_field("54", format_amount(amount)))
    return append_checksum("".join(parts))
