"""
付款手机号（MSISDN）规范化与校验
"""
import re
from typing import Any

from domain.common.exceptions import ValidationError


MSISDN_PATTERN = re.compile(r"^254\d{9}$")


def normalize_phone(phone: Any) -> str:
    """去掉空白与开头的 '+'，把本地格式 '0...' 改写为 '254...'"""
    cleaned = re.sub(r"\s+", "", str(phone or ""))
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    return cleaned


def is_valid_msisdn(phone: Any) -> bool:
    return bool(MSISDN_PATTERN.match(normalize_phone(phone)))


def validate_phone(phone: Any) -> str:
    """返回规范化后的号码；格式非法时抛出 ValidationError"""
    normalized = normalize_phone(phone)
    if not MSISDN_PATTERN.match(normalized):
        raise ValidationError(
            "Invalid phone number format. Use Kenyan format (e.g., 254712345678)",
            field="phone",
            details={"phone": str(phone)},
        )
    return normalized
