from collections.abc import Iterator
import logging

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool

from video_uploader.config import DB_CONNECT_ARGS, DB_URL
from video_uploader.models import Upload

logger = logging.getLogger("video_uploader.db")

engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    poolclass=QueuePool,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,
    echo=False,
)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)
    ensure_schema_compatibility()


def ensure_schema_compatibility() -> None:
    """Add nullable columns that exist on the model but not yet in the uploads table."""
    table = Upload.__table__
    try:
        existing = {column["name"] for column in inspect(engine).get_columns(table.name)}
        missing = [column for column in table.columns if column.name not in existing]
        if not missing:
            return
        with engine.begin() as conn:
            for column in missing:
                if not column.nullable:
                    logger.warning(
                        "event=schema_column_skipped table=%s column=%s reason=not_nullable",
                        table.name,
                        column.name,
                    )
                    continue
                column_type = column.type.compile(dialect=engine.dialect)
                conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {column.name} {column_type}"))
                logger.info("event=schema_column_added table=%s column=%s", table.name, column.name)
    except OperationalError as e:
        logger.warning("Could not check or migrate database schema: %s", e)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
