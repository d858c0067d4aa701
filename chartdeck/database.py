from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from chartdeck.settings import get_settings

settings = get_settings()

engine = create_engine(
    settings.app_db_url,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
    echo=False,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db():
    """Dependency for getting db session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
