from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from models import Base
import config


def get_session(database_url: str = None):
    """Creates the SQLAlchemy session factory and engine"""
    database_url = database_url or config.DATABASE_URL
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    session_factory = sessionmaker(bind=engine)
    return session_factory, engine


def init_tables(engine):
    """Creates database tables"""
    Base.metadata.create_all(engine)
