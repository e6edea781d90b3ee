# cache/store.py – stockage durable des matchs par (joueur, région, queue)
# -----------------------------------------------------------------------------
#  • upsert idempotent sur (match_id, puuid) : jamais de doublon, jamais de
#    réécriture d'une ligne existante.
#  • Le plafond de 200 matchs n'est PAS appliqué ici : l'orchestrateur appelle
#    evict_oldest() avant d'insérer.
#  • sweep_expired() : purge par ancienneté (fetched_at), indépendante du cap.
# -----------------------------------------------------------------------------

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from draftscout.db.match_cache import CachedMatch, PlayerCacheMeta, utcnow
from draftscout.models.match_record import (
    ChampionMastery,
    MatchRecord,
    masteries_from_api,
    record_from_row,
    row_values,
)

log = logging.getLogger(__name__)


class MatchCacheStore:
    """Durable keyed storage of MatchRecords and player meta."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from draftscout.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    @staticmethod
    def _scope(puuid: str, region: str, queue_id: int):
        return (
            CachedMatch.puuid == puuid,
            CachedMatch.region == region.lower(),
            CachedMatch.queue_id == queue_id,
        )

    # ─── Matchs ──────────────────────────────────────────────────────────────
    def upsert(self, records: Iterable[MatchRecord]) -> int:
        """Insert records not already cached. Returns the number of new rows."""
        pending = {}
        for rec in records:
            pending.setdefault(rec.key, rec)   # doublons dans le même lot
        if not pending:
            return 0

        with self._session_factory() as session:
            by_player: dict[str, Set[str]] = {}
            for match_id, puuid in pending:
                by_player.setdefault(puuid, set()).add(match_id)

            existing: Set[tuple[str, str]] = set()
            for puuid, match_ids in by_player.items():
                rows = session.execute(
                    select(CachedMatch.match_id).where(
                        CachedMatch.puuid == puuid,
                        CachedMatch.match_id.in_(match_ids),
                    )
                ).scalars()
                existing.update((mid, puuid) for mid in rows)

            new = [rec for key, rec in pending.items() if key not in existing]
            session.add_all(CachedMatch(**row_values(rec)) for rec in new)
            session.commit()

        if new:
            log.debug(f"Cached {len(new)} new match rows ({len(pending) - len(new)} already present)")
        return len(new)

    def query(
        self,
        puuid: str,
        region: str,
        queue_id: int,
        limit: int = 200,
        newest_first: bool = True,
    ) -> List[MatchRecord]:
        """Records in scope ordered by game date (ties broken by match id)."""
        if newest_first:
            order = (CachedMatch.game_date.desc(), CachedMatch.match_id.desc())
        else:
            order = (CachedMatch.game_date.asc(), CachedMatch.match_id.asc())
        with self._session_factory() as session:
            rows = session.execute(
                select(CachedMatch)
                .where(*self._scope(puuid, region, queue_id))
                .order_by(*order)
                .limit(limit)
            ).scalars().all()
            return [record_from_row(r) for r in rows]

    def count(self, puuid: str, region: str, queue_id: int) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(CachedMatch).where(*self._scope(puuid, region, queue_id))
            ).scalar_one()

    def evict_oldest(self, puuid: str, region: str, queue_id: int, n: int) -> int:
        """Delete the `n` earliest-dated records in scope. Returns rows deleted."""
        if n <= 0:
            return 0
        with self._session_factory() as session:
            victims = session.execute(
                select(CachedMatch.match_id)
                .where(*self._scope(puuid, region, queue_id))
                .order_by(CachedMatch.game_date.asc(), CachedMatch.match_id.asc())
                .limit(n)
            ).scalars().all()
            if not victims:
                return 0
            result = session.execute(
                delete(CachedMatch).where(
                    CachedMatch.puuid == puuid,
                    CachedMatch.match_id.in_(victims),
                )
            )
            session.commit()
        log.info(f"Evicted {result.rowcount} oldest matches for {puuid[:8]} ({region}/{queue_id})")
        return result.rowcount

    def contains(self, match_id: str, puuid: str) -> bool:
        with self._session_factory() as session:
            return session.get(CachedMatch, (match_id, puuid)) is not None

    def known_match_ids(self, puuid: str, match_ids: Sequence[str]) -> Set[str]:
        if not match_ids:
            return set()
        with self._session_factory() as session:
            return set(session.execute(
                select(CachedMatch.match_id).where(
                    CachedMatch.puuid == puuid,
                    CachedMatch.match_id.in_(list(match_ids)),
                )
            ).scalars())

    def newest_game_date(self, puuid: str, region: str, queue_id: int) -> Optional[dt.datetime]:
        with self._session_factory() as session:
            return session.execute(
                select(func.max(CachedMatch.game_date)).where(*self._scope(puuid, region, queue_id))
            ).scalar_one()

    def oldest_game_date(self, puuid: str, region: str, queue_id: int) -> Optional[dt.datetime]:
        with self._session_factory() as session:
            return session.execute(
                select(func.min(CachedMatch.game_date)).where(*self._scope(puuid, region, queue_id))
            ).scalar_one()

    def sweep_expired(self, retention_days: int = 30, now: Optional[dt.datetime] = None) -> int:
        """Delete rows fetched more than `retention_days` ago, all scopes included."""
        cutoff = (now or utcnow()) - dt.timedelta(days=retention_days)
        with self._session_factory() as session:
            result = session.execute(delete(CachedMatch).where(CachedMatch.fetched_at < cutoff))
            session.commit()
        log.info(f"Retention sweep removed {result.rowcount} matches fetched before {cutoff:%Y-%m-%d}")
        return result.rowcount

    def total_matches(self) -> int:
        with self._session_factory() as session:
            return session.execute(select(func.count()).select_from(CachedMatch)).scalar_one()

    # ─── Meta joueurs ────────────────────────────────────────────────────────
    def get_meta(self, puuid: str) -> Optional[PlayerCacheMeta]:
        with self._session_factory() as session:
            meta = session.get(PlayerCacheMeta, puuid)
            if meta is not None:
                session.expunge(meta)
            return meta

    def find_player(self, game_name: str, tag_line: str, region: str) -> Optional[PlayerCacheMeta]:
        """Reverse lookup RiotID → meta (insensible à la casse)."""
        with self._session_factory() as session:
            meta = session.execute(
                select(PlayerCacheMeta).where(
                    func.lower(PlayerCacheMeta.game_name) == game_name.lower(),
                    func.lower(PlayerCacheMeta.tag_line) == tag_line.lower(),
                    PlayerCacheMeta.region == region.lower(),
                )
            ).scalars().first()
            if meta is not None:
                session.expunge(meta)
            return meta

    def save_meta(
        self,
        puuid: str,
        game_name: str,
        tag_line: str,
        region: str,
        summoner_level: Optional[int] = None,
    ) -> None:
        with self._session_factory() as session:
            meta = session.get(PlayerCacheMeta, puuid)
            if meta is None:
                meta = PlayerCacheMeta(puuid=puuid, total_matches_cached=0)
                session.add(meta)
            meta.game_name = game_name
            meta.tag_line = tag_line
            meta.region = region.lower()
            if summoner_level is not None:
                meta.summoner_level = summoner_level
            meta.last_fetch_at = utcnow()
            session.commit()

    def touch_meta(self, puuid: str, total_matches_cached: int) -> None:
        """Met à jour le bookkeeping du dernier fetch (no-op si joueur inconnu)."""
        with self._session_factory() as session:
            meta = session.get(PlayerCacheMeta, puuid)
            if meta is None:
                return
            meta.last_fetch_at = utcnow()
            meta.total_matches_cached = total_matches_cached
            session.commit()

    def save_mastery(self, puuid: str, region: str, masteries: Sequence[ChampionMastery]) -> None:
        with self._session_factory() as session:
            meta = session.get(PlayerCacheMeta, puuid)
            if meta is None:
                # joueur connu seulement par puuid : pas de RiotID à stocker
                meta = PlayerCacheMeta(puuid=puuid, region=region.lower(), total_matches_cached=0)
                session.add(meta)
            meta.mastery = [m.to_api() for m in masteries]
            meta.mastery_fetched_at = utcnow()
            session.commit()

    def load_mastery(self, puuid: str) -> List[ChampionMastery]:
        with self._session_factory() as session:
            meta = session.get(PlayerCacheMeta, puuid)
            return masteries_from_api(meta.mastery if meta is not None else None)

    def player_count(self) -> int:
        with self._session_factory() as session:
            return session.execute(select(func.count()).select_from(PlayerCacheMeta)).scalar_one()
