"""业务异常定义

所有业务错误都继承 DropshopError，携带结构化 code 便于调用方处理：

    try:
        coordinator.create_intent(items, customer_info)
    except InsufficientInventory as e:
        print(e.unavailable)   # 不可售的商品行

status_code 仅供 API 层映射 HTTP 响应使用，服务层不依赖它。
"""

from typing import Any, Dict, List, Optional


class DropshopError(Exception):
    """业务异常基类"""

    code = "dropshop_error"
    status_code = 500
    default_message = "服务内部错误"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        """序列化为响应体"""
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DropshopError):
    """输入参数错误（不重试）"""
    code = "validation_error"
    status_code = 400
    default_message = "请求参数验证失败"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message, errors=errors)
        self.errors = errors


class NotFound(DropshopError):
    code = "not_found"
    status_code = 404
    default_message = "资源未找到"


class InsufficientInventory(DropshopError):
    """库存不足（预期业务结果，提示前端刷新，不自动重试）"""
    code = "insufficient_inventory"
    status_code = 409
    default_message = "部分商品已售罄"

    def __init__(self, unavailable: List[Dict[str, Any]], message: Optional[str] = None):
        super().__init__(message, unavailable=unavailable)
        self.unavailable = unavailable


class PaidOrderUnrecoverable(InsufficientInventory):
    """支付已成功但库存无法再预占，已告警管理员人工处理（退款等）"""
    code = "paid_order_unrecoverable"
    default_message = "支付成功但库存已不可用，已通知管理员"


class NotOrderable(DropshopError):
    """场次不可下单（未开放 / 已截单 / 已结束）"""
    code = "not_orderable"
    status_code = 409
    default_message = "该场次当前不可下单"

    def __init__(self, reason: Optional[str] = None, **details: Any):
        super().__init__(reason, **details)
        self.reason = self.message


class NoActiveDrop(NotOrderable):
    code = "no_active_drop"
    default_message = "当前没有可下单的场次"


class InvalidTransition(DropshopError):
    code = "invalid_transition"
    status_code = 409
    default_message = "场次状态流转不合法"


class DropHasOrders(DropshopError):
    code = "drop_has_orders"
    status_code = 409
    default_message = "场次已有订单，不能删除，请改为取消"


class ReservationReleaseFailure(DropshopError):
    """释放/确认预占失败，说明存储数据不一致（致命，必须上抛）"""
    code = "reservation_release_failure"
    status_code = 500
    default_message = "库存预占状态不一致"


class MaterializationTimeout(DropshopError):
    """支付大概率已成功，但订单尚未落库，提示用户稍候"""
    code = "materialization_timeout"
    status_code = 202
    default_message = "订单正在生成中，请稍后刷新"


class ExternalServiceError(DropshopError):
    """支付服务 / 通知服务调用失败"""
    code = "external_service_error"
    status_code = 502
    default_message = "外部服务调用失败"


class PaymentDeclined(ExternalServiceError):
    code = "payment_declined"
    status_code = 402
    default_message = "支付被拒绝"
