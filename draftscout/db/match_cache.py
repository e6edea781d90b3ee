# match_cache.py – cache des matchs Riot par joueur (SQLAlchemy)

from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, UniqueConstraint
from draftscout.database import Base


def utcnow() -> datetime:
    """UTC naïf : SQLite ne conserve pas le fuseau."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CachedMatch(Base):
    """Participation d'un joueur à un match. 1 ligne par (match_id, puuid)."""
    __tablename__ = "cached_matches"
    match_id      = Column(String, primary_key=True)
    puuid         = Column(String, primary_key=True)
    region        = Column(String, nullable=False)
    champion_id   = Column(Integer, nullable=False)
    champion_name = Column(String, nullable=False)
    kills         = Column(Integer, nullable=False)
    deaths        = Column(Integer, nullable=False)
    assists       = Column(Integer, nullable=False)
    win           = Column(Boolean, nullable=False)
    game_date     = Column(DateTime, nullable=False)   # gameCreation (Riot)
    queue_id      = Column(Integer, nullable=False)
    fetched_at    = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_cached_matches_scope", "puuid", "region", "queue_id", "game_date"),
        Index("ix_cached_matches_fetched_at", "fetched_at"),
    )


class PlayerCacheMeta(Base):
    """Résolution RiotID → puuid + bookkeeping du dernier fetch."""
    __tablename__ = "player_cache_meta"
    puuid                = Column(String, primary_key=True)
    game_name            = Column(String)
    tag_line             = Column(String)
    region               = Column(String, nullable=False)
    summoner_level       = Column(Integer)
    last_fetch_at        = Column(DateTime, nullable=False, default=utcnow)
    total_matches_cached = Column(Integer, nullable=False, default=0)
    mastery              = Column(JSON)                # réponse brute champion-mastery-v4
    mastery_fetched_at   = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("game_name", "tag_line", "region", name="uq_player_name_region"),
    )
