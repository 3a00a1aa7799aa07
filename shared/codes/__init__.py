"""
Business codes carried in every API envelope.

`shared.codes.payment_codes` holds the M-Pesa result codes.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # request errors (1xxxx)
    PARAM_VALIDATION_ERROR = 10003

    # payment state errors (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    CONFLICT = 20007

    # server / upstream errors (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode"]
