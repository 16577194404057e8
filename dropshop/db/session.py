from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from dropshop.core.config import settings

engine = create_engine(
    settings.database_url,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=1800,
    pool_timeout=settings.DB_CONNECT_TIMEOUT_SECONDS,
    connect_args={
        "connect_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
        "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
    },
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)
