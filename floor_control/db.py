import os
from dataclasses import dataclass

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


@dataclass
class DBConfig:
    url: str
    echo: bool = False


def load_db_config() -> DBConfig:
    url = os.environ.get("DATABASE_URL", "sqlite:///./floor_control.sqlite")
    echo = os.environ.get("DATABASE_ECHO", "").strip().lower() in {"1", "true", "yes"}
    return DBConfig(url=url, echo=echo)


def enable_sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT / ROLLBACK TO behave.

    Row reconciliation runs inside ``Session.begin_nested()``; the stock
    pysqlite driver defers BEGIN on its own and breaks nested transactions.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(config: DBConfig):
    kwargs = {}
    if config.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if config.url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(config.url, echo=config.echo, **kwargs)
    if engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)
    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
