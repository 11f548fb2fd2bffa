from decimal import Decimal

import pytest

from promptpay_checkout.checksum import append_checksum, crc16, has_valid_checksum, promptpay_payload
from promptpay_checkout.errors import InvalidReference

MOBILE_PAYLOAD_50 = (
    "00020101021229370016A00000067701011101130066812345678"
    "5802TH5303764540550.0063049948"
)


@pytest.mark.parametrize("payload, expected", [
    ("123456789", "29B1"),
    ("A", "B915"),
    ("", "FFFF"),
    ("00020101021129370016A000000677010111011300668123456785802TH53037646304", "5D82"),
])
def test_crc16_golden_values(payload, expected):
    assert crc16(payload) == expected


def test_crc16_case_is_chosen_by_caller():
    assert crc16("123456789", uppercase=False) == "29b1"


def test_append_checksum_adds_crc_tag_once():
    assert append_checksum("000201") == "0002016304" + crc16("0002016304")
    assert append_checksum("0002016304") == "0002016304" + crc16("0002016304")


def test_has_valid_checksum():
    assert has_valid_checksum(MOBILE_PAYLOAD_50)
    assert has_valid_checksum(MOBILE_PAYLOAD_50[:-4] + "9948".lower())
    assert not has_valid_checksum(MOBILE_PAYLOAD_50[:-1] + "9")
    assert not has_valid_checksum(MOBILE_PAYLOAD_50.replace("50.00", "60.00"))
    assert not has_valid_checksum("")
    assert not has_valid_checksum(None)


def test_promptpay_payload_for_mobile_with_amount():
    assert promptpay_payload("081-234-5678", Decimal("50")) == MOBILE_PAYLOAD_50


def test_promptpay_payload_without_amount_is_static():
    payload = promptpay_payload("0812345678")
    assert payload == "00020101021129370016A000000677010111011300668123456785802TH530376463045D82"


def test_promptpay_payload_for_national_id():
    payload = promptpay_payload("1234567890123", Decimal("1"))
    assert "02131234567890123" in payload
    assert has_valid_checksum(payload)


def test_promptpay_payload_rejects_unknown_ids():
    with pytest.raises(InvalidReference):
        promptpay_payload("12345")
