"""
API依赖项 - 组装支付应用服务（组合根）
"""
from typing import Callable

from fastapi import Depends, Request

from application.ports.payment_gateway import MobileMoneyGateway
from application.services.payment_service import PaymentService
from core.settings import MpesaSettings, mpesa_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


def get_mpesa_settings() -> MpesaSettings:
    return mpesa_settings


def get_gateway(
    request: Request,
    settings: MpesaSettings = Depends(get_mpesa_settings),
) -> MobileMoneyGateway:
    """进程内共享一个网关客户端，以复用连接和缓存的 access token"""
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        gateway = get_payment_gateway(settings)
        request.app.state.payment_gateway = gateway
    return gateway


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_service(
    gateway: MobileMoneyGateway = Depends(get_gateway),
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    settings: MpesaSettings = Depends(get_mpesa_settings),
) -> PaymentService:
    return PaymentService(gateway=gateway, uow_factory=uow_factory, settings=settings)
