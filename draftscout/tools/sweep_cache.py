#!/usr/bin/env python3
"""
tools/sweep_cache.py
Purge les matchs en cache récupérés il y a plus de N jours (30 par défaut).
Indépendant du plafond de 200 matchs par joueur : les deux s'appliquent.
"""

import argparse
import os

from draftscout.cache.store import MatchCacheStore
from draftscout.config import settings
from draftscout.database import init_db
from draftscout.logging_config import get_logger, setup_logging

log = get_logger("draftscout.tools.sweep_cache")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete cached matches older than the retention window.")
    parser.add_argument("--days", type=int, default=settings.CACHE_RETENTION_DAYS,
                        help="retention window in days (default: %(default)s)")
    args = parser.parse_args(argv)

    setup_logging(level=os.getenv("LOG_LEVEL", settings.LOG_LEVEL))
    init_db()
    removed = MatchCacheStore().sweep_expired(retention_days=args.days)
    log.info(f"✔️ {removed} matchs supprimés (> {args.days} jours)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
