import logging
import os
import time

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)

# SQLSTATE for serialization failures (PostgreSQL)
SERIALIZATION_FAILURE = "40001"

# Get environment-specific pool settings
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
ENABLE_QUERY_LOGGING = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
SLOW_QUERY_THRESHOLD = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))
# Seconds a SQLite connection waits for another writer before "database is locked"
SQLITE_BUSY_TIMEOUT = float(os.getenv("DB_SQLITE_BUSY_TIMEOUT", "5"))


def install_sqlite_transactions(target_engine) -> None:
    """
    Let SQLAlchemy, not pysqlite, start SQLite transactions.

    pysqlite defers BEGIN until the first write, so reads that precede it run
    outside any transaction. Here every transaction is begun explicitly, and
    a connection asking for SERIALIZABLE takes the database write lock up
    front with BEGIN IMMEDIATE.
    """

    @event.listens_for(target_engine, "connect")
    def do_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def do_begin(conn):
        if conn.get_execution_options().get("isolation_level") == "SERIALIZABLE":
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def build_engine(url: str, busy_timeout: float = SQLITE_BUSY_TIMEOUT):
    """Create an engine; SQLite gets a thread-shareable connection instead of a sized pool"""
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
            echo=False,
        )
        install_sqlite_transactions(sqlite_engine)
        return sqlite_engine

    return create_engine(
        url,
        pool_pre_ping=True,  # Test connections before using
        pool_recycle=POOL_RECYCLE,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        echo=False,  # Don't log all SQL (use slow query logging instead)
    )


def install_slow_query_logging(target_engine, threshold: float = SLOW_QUERY_THRESHOLD) -> None:
    @event.listens_for(target_engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(target_engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > threshold:
            logger.warning(f"Slow query ({total:.2f}s): {statement[:200]}...")


try:
    engine = build_engine(DATABASE_URL)
    logger.info("Database engine created successfully")
    if not DATABASE_URL.startswith("sqlite"):
        logger.info(
            f"Connection pool: size={POOL_SIZE}, max_overflow={MAX_OVERFLOW}, timeout={POOL_TIMEOUT}s"
        )
except Exception as e:
    logger.error(f"Failed to create database engine: {e}")
    raise

if ENABLE_QUERY_LOGGING:
    install_slow_query_logging(engine)
    logger.info(f"Slow query logging enabled (threshold: {SLOW_QUERY_THRESHOLD}s)")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def begin_serializable(db: Session) -> None:
    """Open the session's transaction at SERIALIZABLE unless one is already running"""
    if not db.in_transaction():
        db.connection(execution_options={"isolation_level": "SERIALIZABLE"})


def is_serialization_failure(error: OperationalError) -> bool:
    """A lost write race: PostgreSQL SQLSTATE 40001 or a SQLite lock timeout"""
    if getattr(error.orig, "pgcode", None) == SERIALIZATION_FAILURE:
        return True
    return "database is locked" in str(error.orig)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
