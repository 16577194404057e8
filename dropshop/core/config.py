import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "dropshop")
    DB_CONNECT_TIMEOUT_SECONDS: int = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "5"))
    DB_STATEMENT_TIMEOUT_MS: int = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))

    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SOCKET_TIMEOUT_SECONDS: float = float(os.getenv("REDIS_SOCKET_TIMEOUT_SECONDS", "2"))
    STOCK_CACHE_TTL_SECONDS: int = int(os.getenv("STOCK_CACHE_TTL_SECONDS", "300"))
    MATERIALIZE_LOCK_TTL_MS: int = int(os.getenv("MATERIALIZE_LOCK_TTL_MS", "10000"))

    # 门店与截单配置
    SHOP_TIMEZONE: str = os.getenv("SHOP_TIMEZONE", "Europe/Paris")
    DROP_GRACE_PERIOD_MINUTES: int = int(os.getenv("DROP_GRACE_PERIOD_MINUTES", "15"))

    # 预占与轮询配置
    RESERVATION_TTL_MINUTES: int = int(os.getenv("RESERVATION_TTL_MINUTES", "15"))
    ORDER_POLL_MAX_ATTEMPTS: int = int(os.getenv("ORDER_POLL_MAX_ATTEMPTS", "30"))
    ORDER_POLL_INTERVAL_MS: int = int(os.getenv("ORDER_POLL_INTERVAL_MS", "1000"))

    # Stripe 支付配置
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "eur")
    PAYMENT_TIMEOUT_SECONDS: int = int(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))
    PAYMENT_MAX_NETWORK_RETRIES: int = int(os.getenv("PAYMENT_MAX_NETWORK_RETRIES", "2"))

    # 邮件通知配置
    SMTP_HOST: str = os.getenv("SMTP_HOST", "localhost")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "1025"))
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM: str = os.getenv("SMTP_FROM", "orders@dropshop.local")
    SMTP_USE_TLS: bool = os.getenv("SMTP_USE_TLS", "false").lower() in {"1", "true", "yes", "on"}
    SMTP_TIMEOUT_SECONDS: int = int(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))
    ADMIN_ALERT_EMAIL: str = os.getenv("ADMIN_ALERT_EMAIL", "")
    SHOP_NAME: str = os.getenv("SHOP_NAME", "Dropshop")

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

settings = Settings()
