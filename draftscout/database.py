# database.py – moteur SQLAlchemy du cache de matchs (engine, session, Base)

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from draftscout.config import settings

Base = declarative_base()


def make_engine(url: str) -> Engine:
    """
    Engine pour `url`. Pour un fichier SQLite, crée son dossier et autorise
    l'accès depuis le thread de uvicorn (health app).
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_file = url.replace("sqlite:///", "", 1)
        if url.startswith("sqlite:///") and db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, future=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


engine = make_engine(settings.DB_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None) -> None:
    """Crée cached_matches et player_cache_meta si absentes (sinon : alembic)."""
    # Import local pour éviter le cycle d'import
    from draftscout.db import match_cache  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
