import os

from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def get_engine(url: str | None = None) -> Engine:
    db_url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if db_url.startswith("sqlite") and (":memory:" in db_url or db_url.rstrip("/").endswith("sqlite:")):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(
            db_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, future=True)
