"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class, with
connection pool metrics when a pooled backend (PostgreSQL) is configured.
"""
import logging
import os
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool
from prometheus_client import Gauge, Counter
from core.config import settings

logger = logging.getLogger(__name__)

# Database connection pool metrics
db_pool_connections_active = Gauge(
    "chat_db_pool_connections_active",
    "Number of active database connections"
)

db_pool_connections_idle = Gauge(
    "chat_db_pool_connections_idle",
    "Number of idle database connections in pool"
)

db_connections_opened_total = Counter(
    "chat_db_connections_opened_total",
    "Total number of DBAPI connections opened"
)

# Connection pool settings (ignored for SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite connections are shared with the worker threads persistence runs
    on, so ``check_same_thread`` is disabled there.
    """
    if database_url.startswith("sqlite"):
        new_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    else:
        new_engine = create_engine(
            database_url,
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_pre_ping=DB_POOL_PRE_PING,
            pool_recycle=DB_POOL_RECYCLE,
            echo=settings.log_level == "DEBUG"
        )
    _register_pool_metrics(new_engine)
    return new_engine


def _register_pool_metrics(target: Engine) -> None:
    @event.listens_for(target, "connect")
    def receive_connect(dbapi_conn, connection_record):
        db_connections_opened_total.inc()

    if not isinstance(target.pool, QueuePool):
        return

    @event.listens_for(target, "checkout")
    def receive_checkout(dbapi_conn, connection_record, connection_proxy):
        pool = target.pool
        db_pool_connections_active.set(pool.checkedout())
        db_pool_connections_idle.set(max(pool.size() - pool.checkedout(), 0))


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine = None) -> None:
    """
    Create all tables.
    Should be called once during application startup.
    """
    from db import models  # noqa: F401  (registers models with Base)
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


def seed_db(session_factory=None) -> None:
    """
    Seed the database with a system user and the public ``general`` room.
    Does nothing when a room already exists.
    """
    from db.models import RoomModel, UserModel

    db = (session_factory or SessionLocal)()
    try:
        if db.query(RoomModel).count() > 0:
            logger.info("Database already seeded")
            return

        system_user = UserModel(id="system", username="system")
        general = RoomModel(
            id="general",
            name="general",
            description="Default public room",
            is_private=False,
            created_by=system_user.id,
            active_users=[]
        )
        db.add_all([system_user, general])
        db.commit()
        logger.info("Database seeded with default room")

    except Exception:
        db.rollback()
        logger.exception("Error seeding database")
        raise
    finally:
        db.close()
