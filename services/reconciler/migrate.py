from sqlalchemy import create_engine, inspect

import db.models  # noqa: F401  registers tables on Base.metadata
from common.config import POSTGRES_DSN
from common.logs import log_event
from db.session import Base


def create_schema(engine) -> list[str]:
    """Create any missing tables. Existing tables are left untouched."""
    before = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    created = sorted(set(Base.metadata.tables) - before)
    log_event("schema_ready", created=created, tables=sorted(Base.metadata.tables))
    return created


def main():
    engine = create_engine(POSTGRES_DSN, pool_pre_ping=True)
    try:
        create_schema(engine)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
