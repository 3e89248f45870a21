from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine, event
from ordercore.core.config import settings

class Base(DeclarativeBase): pass

def make_engine(dsn: str, **kwargs):
    if not dsn.startswith("sqlite"):
        return create_engine(dsn, pool_pre_ping=True, **kwargs)

    # SQLite has no row locks: take the write lock when the transaction
    # begins so concurrent checkouts serialize like SELECT ... FOR UPDATE.
    connect_args = kwargs.pop("connect_args", {})
    connect_args.setdefault("check_same_thread", False)
    connect_args.setdefault("timeout", 30)
    engine = create_engine(dsn, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine

def make_sessionmaker(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

engine = make_engine(settings.POSTGRES_DSN)
SessionLocal = make_sessionmaker(engine)
