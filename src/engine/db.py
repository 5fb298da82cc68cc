# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from engine.config import DATABASE_URL
from engine.models import Base


def make_engine(database_url: str = DATABASE_URL):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(bind):
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=bind or engine)
