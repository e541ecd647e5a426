import importlib
import logging
import os
import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from bookstore.config import settings

log = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # sessions are handed across FastAPI's threadpool; writers wait on each other
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(DATABASE_URL, future=True, echo=False, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

MODEL_MODULES = [
    "bookstore.models.variant",
    "bookstore.models.cart",
    "bookstore.models.cart_item",
    "bookstore.models.cart_history",
    "bookstore.models.order",
    "bookstore.models.transaction",
    "bookstore.models.domain_event",
]


def _running_pytest() -> bool:
    if any("pytest" in os.path.basename(a).lower() for a in sys.argv):
        return True
    return "PYTEST_CURRENT_TEST" in os.environ


def init_db(reset: bool = None):
    """
    Create the schema.

    Tables are dropped first when ``reset`` is true, when RESET_DB is set, or
    when running under pytest, so every run starts from a clean database.
    """
    if reset is None:
        reset = settings.RESET_DB or _running_pytest()

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    if reset:
        log.info("Resetting database schema")
        Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    log.info("Database initialized (%s)", engine.url.render_as_string(hide_password=True))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
