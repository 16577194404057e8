"""订单通知（邮件）

对核心流程来说通知是 fire-and-forget：send() 只返回成功与否，
调用方记录日志即可，不会因为邮件失败而影响下单。
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

from dropshop.core.config import settings

logger = logging.getLogger(__name__)


def render_confirmation(payload: Dict[str, Any]) -> str:
    lines = [
        f"Hi {payload['customer_name']},",
        "",
        f"Thanks for your order {payload['order_number']} at {settings.SHOP_NAME}.",
        f"Pickup: {payload['pickup_date']} {payload['pickup_time']}",
        f"Location: {payload.get('location_name') or 'Pickup Location'}"
        + (f" ({payload['location_district']})" if payload.get("location_district") else ""),
        "",
    ]
    for item in payload["items"]:
        lines.append(f"  {item['quantity']} x {item['product_name']}  {item['total_price']}")
    lines.append("")
    lines.append(f"Total: {payload['total_amount']}")
    if payload.get("special_instructions"):
        lines.append(f"Notes: {payload['special_instructions']}")
    if payload.get("location_url"):
        lines.append(payload["location_url"])
    return "\n".join(lines)


class EmailNotifier:
    """SMTP 邮件发送"""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT

    def _deliver(self, to_email: str, subject: str, body: str) -> bool:
        msg = EmailMessage()
        msg["From"] = settings.SMTP_FROM
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=settings.SMTP_TIMEOUT_SECONDS) as server:
                if settings.SMTP_USE_TLS:
                    server.starttls()
                if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"邮件发送失败: to={to_email}, error={e}")
            return False

        logger.info(f"邮件发送成功: to={to_email}, subject={subject}")
        return True

    def send(self, payload: Dict[str, Any]) -> bool:
        """发送订单确认邮件"""
        return self._deliver(
            payload["customer_email"],
            f"Order Confirmation - {payload['order_number']}",
            render_confirmation(payload),
        )

    def send_admin_alert(self, subject: str, body: str) -> bool:
        if not settings.ADMIN_ALERT_EMAIL:
            logger.warning(f"未配置 ADMIN_ALERT_EMAIL，告警仅记录日志: {subject}")
            return False
        return self._deliver(settings.ADMIN_ALERT_EMAIL, subject, body)


class CeleryNotifier:
    """通过 Celery notification 队列异步发送，不阻塞请求"""

    def send(self, payload: Dict[str, Any]) -> bool:
        from tasks.notification_tasks import send_order_confirmation

        send_order_confirmation.delay(payload)
        return True

    def send_admin_alert(self, subject: str, body: str) -> bool:
        from tasks.notification_tasks import send_admin_alert

        send_admin_alert.delay(subject, body)
        return True
