"""
Factory for mobile-money gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import MpesaSettings, mpesa_settings
from application.ports.payment_gateway import MobileMoneyGateway


def get_payment_gateway(settings: Optional[MpesaSettings] = None) -> MobileMoneyGateway:
    from .mpesa_client import DarajaClient
    return DarajaClient(settings or mpesa_settings)
