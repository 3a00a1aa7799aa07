"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    retryable: bool = False

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class ValidationError(BusinessException):
    """调用方输入非法（手机号/金额/参考号），不会发起网络请求，也不会重试"""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            details=details,
            field=field,
        )


class NotFound(BusinessException):
    """支付/尝试/关联ID 不存在"""

    def __init__(self, resource: str, identifier: object):
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"{resource} not found: {identifier}",
            error_type="NotFound",
            details={"resource": resource, "id": str(identifier)},
        )


class Conflict(BusinessException):
    """当前状态不允许该操作（例如对未失败的支付发起重试）"""

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(
            code=BusinessCode.CONFLICT,
            message=message,
            error_type="Conflict",
            details=details,
        )


class GatewayUnavailable(BusinessException):
    """网关不可达或认证失败（超时、DNS、非2xx、响应体异常），可重试"""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        full_details = {"operation": operation, "status_code": status_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="GatewayUnavailable",
            details=full_details,
        )
        self.operation = operation
        self.status_code = status_code
