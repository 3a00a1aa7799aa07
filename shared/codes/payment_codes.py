"""
M-Pesa specific codes and Daraja result code mapping.
"""
from __future__ import annotations

# ResultCode reported by Daraja for a completed STK push
SUCCESS_RESULT_CODE = "0"

# Written by the verifier when the gateway never heard of the request
RECONCILIATION_NOT_FOUND_CODE = "9404"

# stkpushquery error codes (errorCode field of a non-2xx body)
QUERY_PROCESSING_ERROR_CODES = frozenset({"500.001.1001"})
QUERY_NOT_FOUND_ERROR_CODES = frozenset({"400.002.02", "404.001.03"})

RESULT_CODE_DESCRIPTIONS: dict[str, str] = {
    "0": "Success",
    "1": "Insufficient funds",
    "2": "Less than minimum transaction value",
    "3": "More than maximum transaction value",
    "4": "Would exceed daily transfer limit",
    "5": "Would exceed minimum balance",
    "6": "Unresolved primary party",
    "7": "Unresolved receiver party",
    "8": "Would exceed maximum balance",
    "11": "Debit account invalid",
    "12": "Credit account invalid",
    "13": "Unresolved debit account",
    "14": "Unresolved credit account",
    "15": "Duplicate detected",
    "17": "Internal failure",
    "20": "Unresolved initiator",
    "26": "Traffic blocking condition in place",
    "1001": "Unable to lock subscriber, a transaction is already in process",
    "1019": "Transaction expired",
    "1025": "An error occurred while sending the push request",
    "1032": "Request cancelled by user",
    "1037": "DS timeout, user cannot be reached",
    "2001": "The initiator information is invalid",
    RECONCILIATION_NOT_FOUND_CODE: "Transaction not found at gateway after reconciliation",
}
