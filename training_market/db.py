import logging

from sqlmodel import Session, SQLModel, create_engine

from training_market.settings import settings
from training_market import models  # noqa: F401

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, echo=False, connect_args=connect_args)


def create_db_and_tables(bind=None) -> None:
    """Run the schema migration once; request handlers never create tables."""
    SQLModel.metadata.create_all(bind or engine)
    logger.info("database schema ready")


def get_session():
    with Session(engine) as session:
        yield session
