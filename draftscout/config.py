# config.py – Chargement des paramètres via pydantic-settings

from datetime import datetime
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # — API Keys —
    RIOT_API_KEY: str

    # — Database —
    DB_URL: str = "sqlite:///data/draftscout.db"

    # — Riot API Configuration —
    DEFAULT_REGION: str = "euw1"        # Région par défaut pour les comptes
    DEFAULT_QUEUE_ID: int = 420         # Ranked Solo/Duo
    SEASON_START: Optional[datetime] = None  # ignore les parties plus anciennes

    # — Throttle / retry —
    RIOT_MIN_INTERVAL: float = 1.2      # secondes entre deux appels (100 req / 120 s)
    RIOT_MAX_RETRIES: int = 3
    RIOT_BACKOFF_BASE: float = 1.0
    RIOT_TIMEOUT: float = 10.0

    # — Cache des matchs —
    MATCH_CACHE_CAP: int = 200          # max de matchs par (joueur, région, queue)
    MATCH_BATCH_SIZE: int = 3           # appels match-v5 concurrents par batch
    DEFAULT_MATCH_COUNT: int = 60
    CACHE_RETENTION_DAYS: int = 30

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
