"""Redis 客户端配置模块"""

import os
from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redlock import Redlock

from dropshop.core.config import settings

REDIS_URL = settings.redis_url

# 基础 Redis 客户端（带超时，避免阻塞请求）
redis_client = Redis.from_url(
    REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
)
async_redis = AsyncRedis.from_url(
    REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
)

# Redlock 配置（支持单实例和多实例）
def create_redlock():
    """根据环境变量动态创建 Redlock 实例"""
    redis_hosts = os.getenv("REDIS_HOSTS", settings.REDIS_HOST)

    if "," in redis_hosts:  # 多实例模式
        hosts = redis_hosts.split(",")
        servers = [
            {"host": host.strip(), "port": settings.REDIS_PORT, "db": settings.REDIS_DB}
            for host in hosts
        ]
    else:  # 单实例模式
        servers = [
            {"host": settings.REDIS_HOST, "port": settings.REDIS_PORT, "db": settings.REDIS_DB}
        ]

    return Redlock(servers)

redlock = create_redlock()

# 导出
__all__ = [
    "redis_client",
    "async_redis",
    "redlock",
    "REDIS_URL"
]
