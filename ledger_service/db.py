from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from common.settings import settings

def database_url() -> str:
    if settings.database_url:
        return settings.database_url
    return f"mysql+mysqlconnector://{settings.mysql_user}:{settings.mysql_password}@{settings.mysql_host}:{settings.mysql_port}/{settings.mysql_db}"

def build_engine(url: str):
    if url.startswith("sqlite"):
        # one shared connection so an in-memory database survives across sessions
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def build_sessionmaker(bind):
    return sessionmaker(bind=bind, expire_on_commit=False)

URL = database_url()
engine = build_engine(URL)
SessionLocal = build_sessionmaker(engine)

def init_db(bind=None):
    from ledger_service.models import Base
    Base.metadata.create_all(bind=bind or engine)
