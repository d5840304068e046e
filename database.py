# database.py
"""
Engine and session plumbing for the rebate engine.

MS SQL Server (pymssql) in deployment, a sqlite file locally and in tests.
Engine services take a Session argument and own their commits; routes get one
session per request from get_session.

Usage:
     from database import get_session, engine

     # In FastAPI routes:
     @router.get("/receipts")
     def list_receipts(db: Session = Depends(get_session)):
          return db.query(ReceiptRecord).all()
     """
import logging
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
     """
     Create an engine for the given URL.

     sqlite needs check_same_thread disabled because FastAPI runs sync routes
     in a thread pool; server databases get a bounded, recycled pool.
     """
     if database_url.startswith("sqlite"):
          return create_engine(
               database_url,
               connect_args={"check_same_thread": False, "timeout": 30},
               echo=echo,
          )
     return create_engine(
          database_url,
          pool_size=5,
          max_overflow=10,
          pool_timeout=30,
          pool_recycle=1800,  # Recycle connections after 30 minutes
          echo=echo,
     )


def build_session_factory(bind: Engine) -> sessionmaker:
     return sessionmaker(
          bind=bind,
          autocommit=False,
          autoflush=False,
          expire_on_commit=False,
     )


# Create SQLAlchemy engine
engine = build_engine(settings.database_url, echo=settings.sql_echo)

# Session factory
SessionLocal = build_session_factory(engine)


def get_session() -> Generator[Session, None, None]:
     """
     FastAPI dependency that provides a database session.

     Engine services commit at their own transaction boundaries; anything still
     pending when the request ends is committed here.

     Yields:
          Session: SQLAlchemy database session
     """
     session = SessionLocal()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


def init_db(bind: Engine = engine) -> None:
     """
     Create missing tables from the models (local sqlite only; deployed
     databases are migrated with Alembic).
     """
     from models import Base
     Base.metadata.create_all(bind=bind)


def check_connection() -> bool:
     """
     Round-trip a trivial query. Used by /health.
     """
     try:
          with engine.connect() as conn:
               conn.execute(text("SELECT 1"))
          return True
     except Exception as e:
          logger.error(f"Database connection failed: {e}")
          return False
