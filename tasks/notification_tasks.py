"""通知相关的 Celery 任务"""

from celery_app import app
from dropshop.services.notifier import EmailNotifier
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.notification.send_order_confirmation', bind=True, max_retries=3, default_retry_delay=60)
def send_order_confirmation(self, payload: dict):
    """发送订单确认邮件，SMTP 失败时有限次重试

    Args:
        payload: 订单邮件数据（order_number、customer_email、items 等）
    """
    if EmailNotifier().send(payload):
        return {"status": "sent", "order_number": payload["order_number"]}

    if self.request.retries >= self.max_retries:
        # 邮件不影响订单，重试耗尽后放弃
        logger.error(f"确认邮件最终发送失败: order_number={payload['order_number']}")
        return {"status": "failed", "order_number": payload["order_number"]}

    logger.warning(f"确认邮件发送失败，稍后重试: order_number={payload['order_number']}")
    raise self.retry()

@app.task(name='tasks.notification.send_admin_alert')
def send_admin_alert(subject: str, body: str):
    """发送管理员告警"""
    sent = EmailNotifier().send_admin_alert(subject, body)
    return {"status": "sent" if sent else "skipped", "subject": subject}

# 导出任务
__all__ = [
    'send_order_confirmation',
    'send_admin_alert',
]
