# draftscout/services/orchestrator.py
# =============================================================================
# Récupération cache-first des matchs d'un joueur
#   HIT  : émet le cache tout de suite → probe (1 id) → [backfill] → ré-émet
#   MISS : fetch complet par batchs de 3 → émet après chaque batch → cache
#   LOAD MORE : pagine vers le passé depuis le plus vieux match en cache
# Le plafond (200 matchs par joueur/région/queue) est appliqué ici, jamais
# dans le store : évictions puis insertion, sous un verrou par scope.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from draftscout.cache.store import MatchCacheStore
from draftscout.config import settings
from draftscout.models.match_record import (
    ChampionMastery,
    MatchRecord,
    masteries_from_api,
    record_from_match,
    to_epoch_s,
)
from draftscout.riot.client import (
    NotFoundError,
    RateLimitError,
    RiotAPIError,
    RiotClient,
    UnavailableError,
    describe_error,
)

log = logging.getLogger(__name__)

ProgressCallback = Callable[[List[MatchRecord], bool, List[ChampionMastery]], Any]
Scope = Tuple[str, str, int]

MAX_ROSTER = 12
PAGE_SIZE = 100        # max accepté par match-v5 /ids


@dataclass(frozen=True)
class PlayerRef:
    puuid: str
    game_name: Optional[str]
    tag_line: Optional[str]
    region: str
    summoner_level: Optional[int] = None

    @property
    def riot_id(self) -> str:
        return f"{self.game_name}#{self.tag_line}"


@dataclass(frozen=True)
class LoadMoreResult:
    records: List[MatchRecord]
    has_more: bool
    mastery: List[ChampionMastery] = field(default_factory=list)
    error: Optional[RiotAPIError] = None


@dataclass(frozen=True)
class RosterResult:
    player: PlayerRef
    records: List[MatchRecord]
    error: Optional[RiotAPIError] = None


async def _emit(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Appelle un callback sync ou async."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _chunks(items: Sequence[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _newest_first(records: Sequence[MatchRecord]) -> List[MatchRecord]:
    return sorted(records, key=lambda r: (r.game_date, r.match_id), reverse=True)


class CacheOrchestrator:
    """Cache-first retrieval and refresh state machine."""

    def __init__(
        self,
        client: RiotClient,
        store: MatchCacheStore,
        cap: Optional[int] = None,
        batch_size: Optional[int] = None,
        default_count: Optional[int] = None,
        queue_id: Optional[int] = None,
        season_start=None,
        page_size: int = PAGE_SIZE,
    ):
        self.client = client
        self.store = store
        self.cap = cap or settings.MATCH_CACHE_CAP
        self.batch_size = batch_size or settings.MATCH_BATCH_SIZE
        self.default_count = default_count or settings.DEFAULT_MATCH_COUNT
        self.queue_id = queue_id if queue_id is not None else settings.DEFAULT_QUEUE_ID
        self.season_start = season_start if season_start is not None else settings.SEASON_START
        self.page_size = page_size

        self._locks: Dict[Scope, asyncio.Lock] = {}
        self._refreshing: Set[Scope] = set()
        self._observers: Dict[Scope, List[ProgressCallback]] = {}
        self._background: Set[asyncio.Task] = set()

    # ─── Helpers ─────────────────────────────────────────────────────────────
    def _lock_for(self, scope: Scope) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    def _season_start_s(self) -> Optional[int]:
        return to_epoch_s(self.season_start) if self.season_start else None

    def roster_share(self, players: int) -> int:
        """Part de matchs par joueur quand on interroge tout un roster."""
        return max(1, min(self.default_count, self.cap // max(1, players)))

    async def _collect_ids(
        self,
        puuid: str,
        region: str,
        queue_id: int,
        limit: int,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[str]:
        """Pagine match-v5 /ids jusqu'à `limit` ids ou une page incomplète."""
        ids: List[str] = []
        start = 0
        while len(ids) < limit:
            count = min(self.page_size, limit - len(ids))
            page = await self.client.get_match_ids(
                region, puuid, count=count, start=start,
                start_time=start_time, end_time=end_time, queue=queue_id,
            )
            ids.extend(page)
            if len(page) < count:
                break
            start += len(page)
        return ids

    async def _fetch_batch(self, puuid: str, region: str, batch: Sequence[str]) -> List[MatchRecord]:
        """Un batch de match-v5 en parallèle ; attend la fin de TOUS les appels."""
        payloads = await asyncio.gather(
            *(self.client.get_match_by_id(region, mid) for mid in batch),
            return_exceptions=True,
        )
        records: List[MatchRecord] = []
        failure: Optional[BaseException] = None
        for mid, payload in zip(batch, payloads):
            if isinstance(payload, BaseException):
                failure = failure or payload
                continue
            if payload is None:
                log.debug(f"Match {mid} not found, skipped")
                continue
            try:
                rec = record_from_match(payload, puuid, region)
            except ValueError as e:
                log.warning(f"Skipping malformed match {mid}: {e}")
                continue
            if rec is None:
                log.debug(f"Player {puuid[:8]} absent from {mid}, skipped")
                continue
            records.append(rec)
        if failure is not None:
            # les matchs déjà reçus sont gardés par l'appelant
            raise _BatchFailed(records, failure)
        return records

    async def _fetch_and_merge(
        self,
        puuid: str,
        region: str,
        queue_id: int,
        match_ids: Sequence[str],
        on_batch: Optional[Callable[[List[MatchRecord]], Awaitable[None]]] = None,
    ) -> List[MatchRecord]:
        """
        Récupère les détails par batchs séquentiels puis les met en cache.
        En cas d'échec, les batchs déjà reçus sont quand même mis en cache.
        """
        fetched: List[MatchRecord] = []
        try:
            for batch in _chunks(list(match_ids), self.batch_size):
                try:
                    fetched.extend(await self._fetch_batch(puuid, region, batch))
                except _BatchFailed as e:
                    fetched.extend(e.records)
                    raise e.cause from None
                if on_batch is not None:
                    await on_batch(fetched)
        finally:
            if fetched:
                await self._merge(puuid, region, queue_id, fetched)
        return fetched

    async def _merge(self, puuid: str, region: str, queue_id: int, records: Sequence[MatchRecord]) -> int:
        """Évince puis insère pour que count(scope) <= cap après l'écriture."""
        scope = (puuid, region, queue_id)
        async with self._lock_for(scope):
            in_scope = [r for r in records if r.puuid == puuid and r.queue_id == queue_id]
            if len(in_scope) != len(records):
                log.debug(f"Dropped {len(records) - len(in_scope)} records outside scope {queue_id}")

            known = self.store.known_match_ids(puuid, [r.match_id for r in in_scope])
            unique = {r.match_id: r for r in in_scope if r.match_id not in known}
            new = _newest_first(list(unique.values()))[: self.cap]
            if not new:
                return 0

            overflow = self.store.count(puuid, region, queue_id) + len(new) - self.cap
            if overflow > 0:
                self.store.evict_oldest(puuid, region, queue_id, overflow)
            inserted = self.store.upsert(new)
            self.store.touch_meta(puuid, self.store.count(puuid, region, queue_id))
        log.info(f"Merged {inserted} new matches for {puuid[:8]} ({region}/{queue_id})")
        return inserted

    async def _fetch_mastery(self, puuid: str, region: str) -> Optional[List[ChampionMastery]]:
        """Mastery best-effort : None si l'API ne répond pas."""
        try:
            raw = await self.client.get_champion_masteries(region, puuid)
        except RiotAPIError as e:
            log.warning(f"Mastery unavailable for {puuid[:8]}: {describe_error(e)}")
            return None
        masteries = masteries_from_api(raw)
        self.store.save_mastery(puuid, region, masteries)
        return masteries

    # ─── Cache-first ─────────────────────────────────────────────────────────
    async def fetch_with_cache(
        self,
        puuid: str,
        region: str,
        queue_id: Optional[int] = None,
        callback: Optional[ProgressCallback] = None,
        requested_count: Optional[int] = None,
    ) -> List[MatchRecord]:
        """
        Retourne les matchs du joueur, cache d'abord.

        HIT : `callback(records, True, mastery)` avant tout appel réseau, puis un
        refresh détaché (jamais attendu, erreurs contenues) qui rappelle
        `callback(records, False, mastery)` s'il trouve du neuf.
        MISS : fetch complet, `callback(partial, False, mastery)` après chaque
        batch ; les erreurs Riot remontent (RateLimitError, UnavailableError...).
        """
        region = region.lower()
        queue_id = self.queue_id if queue_id is None else queue_id

        cached = self.store.query(puuid, region, queue_id, limit=self.cap)
        if cached:
            log.debug(f"Cache hit for {puuid[:8]}: {len(cached)} matches")
            await _emit(callback, cached, True, self.store.load_mastery(puuid))
            self._spawn_refresh(puuid, region, queue_id, callback)
            return cached

        log.info(f"Cache miss for {puuid[:8]} ({region}/{queue_id}), full fetch")
        return await self._full_fetch(puuid, region, queue_id, callback, requested_count or self.default_count)

    async def _full_fetch(
        self,
        puuid: str,
        region: str,
        queue_id: int,
        callback: Optional[ProgressCallback],
        requested_count: int,
    ) -> List[MatchRecord]:
        ids = await self._collect_ids(
            puuid, region, queue_id,
            limit=min(requested_count, self.cap),
            start_time=self._season_start_s(),
        )
        mastery = await self._fetch_mastery(puuid, region) or []

        async def on_batch(fetched: List[MatchRecord]) -> None:
            await _emit(callback, _newest_first(fetched), False, mastery)

        await self._fetch_and_merge(puuid, region, queue_id, ids, on_batch)
        return self.store.query(puuid, region, queue_id, limit=self.cap)

    # ─── Refresh (probe + backfill) ──────────────────────────────────────────
    def _spawn_refresh(
        self,
        puuid: str,
        region: str,
        queue_id: int,
        callback: Optional[ProgressCallback],
    ) -> Optional[asyncio.Task]:
        scope = (puuid, region, queue_id)
        if callback is not None:
            self._observers.setdefault(scope, []).append(callback)
        if scope in self._refreshing:
            log.debug(f"Refresh already running for {puuid[:8]}, joining it")
            return None
        self._refreshing.add(scope)
        task = asyncio.create_task(
            self._background_refresh(puuid, region, queue_id),
            name=f"refresh:{puuid[:8]}:{region}:{queue_id}",
        )
        self._background.add(task)
        task.add_done_callback(partial(self._refresh_done, scope))
        return task

    def _refresh_done(self, scope: Scope, task: asyncio.Task) -> None:
        self._background.discard(task)
        self._refreshing.discard(scope)
        self._observers.pop(scope, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Background refresh {task.get_name()} crashed", exc_info=exc)

    async def _background_refresh(
        self,
        puuid: str,
        region: str,
        queue_id: int,
    ) -> None:
        """Refresh d'un scope ; notifie chaque observateur inscrit pendant son exécution."""
        scope = (puuid, region, queue_id)
        try:
            records = await self.refresh(puuid, region, queue_id)
        except RiotAPIError as e:
            # on garde le dernier cache valide, rien ne remonte à l'appelant
            log.warning(f"Background refresh failed for {puuid[:8]}, keeping cache: {describe_error(e)}")
            return
        if records is None:
            return
        mastery = self.store.load_mastery(puuid)
        observers = self._observers.get(scope, [])
        # la liste peut grandir pendant un callback async
        i = 0
        while i < len(observers):
            await _emit(observers[i], records, False, mastery)
            i += 1

    async def refresh(self, puuid: str, region: str, queue_id: Optional[int] = None) -> Optional[List[MatchRecord]]:
        """
        Probe puis backfill.

        Returns:
            Le cache mis à jour, ou None si le match le plus récent est déjà connu
        """
        region = region.lower()
        queue_id = self.queue_id if queue_id is None else queue_id

        probe = await self.client.get_match_ids(
            region, puuid, count=1, start_time=self._season_start_s(), queue=queue_id,
        )
        if not probe or self.store.contains(probe[0], puuid):
            log.debug(f"{puuid[:8]} up to date, no backfill")
            return None

        newest = self.store.newest_game_date(puuid, region, queue_id)
        start_time = to_epoch_s(newest) + 1 if newest else self._season_start_s()
        ids = await self._collect_ids(puuid, region, queue_id, limit=self.cap, start_time=start_time)
        known = self.store.known_match_ids(puuid, ids)
        new_ids = [mid for mid in ids if mid not in known]
        log.info(f"Backfilling {len(new_ids)} matches for {puuid[:8]}")

        await self._fetch_and_merge(puuid, region, queue_id, new_ids)
        await self._fetch_mastery(puuid, region)
        return self.store.query(puuid, region, queue_id, limit=self.cap)

    async def wait_for_background(self) -> None:
        """Attend la fin des refresh détachés (tests, arrêt propre)."""
        while True:
            pending = [t for t in self._background if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ─── Load more ───────────────────────────────────────────────────────────
    async def load_more_matches(
        self,
        puuid: str,
        region: str,
        queue_id: Optional[int],
        additional_count: int,
    ) -> LoadMoreResult:
        """
        Étend le cache avec des matchs plus anciens, jusqu'au plafond.

        `has_more` n'est vrai que si la page était pleine, qu'au moins un match
        a été ajouté et que le cache n'a pas atteint le plafond.
        """
        region = region.lower()
        queue_id = self.queue_id if queue_id is None else queue_id
        mastery = self.store.load_mastery(puuid)

        count = self.store.count(puuid, region, queue_id)
        if count >= self.cap:
            return LoadMoreResult(self.store.query(puuid, region, queue_id, limit=self.cap), False, mastery)

        wanted = min(additional_count, self.cap - count, self.page_size)
        if wanted <= 0:
            return LoadMoreResult(self.store.query(puuid, region, queue_id, limit=self.cap), True, mastery)

        oldest = self.store.oldest_game_date(puuid, region, queue_id)
        try:
            ids = await self.client.get_match_ids(
                region, puuid, count=wanted,
                start_time=self._season_start_s(),
                end_time=to_epoch_s(oldest) - 1 if oldest else None,
                queue=queue_id,
            )
            known = self.store.known_match_ids(puuid, ids)
            await self._fetch_and_merge(puuid, region, queue_id, [m for m in ids if m not in known])
        except (RateLimitError, UnavailableError) as e:
            if count == 0:
                raise
            log.warning(f"Load more failed for {puuid[:8]}, returning cache: {describe_error(e)}")
            return LoadMoreResult(self.store.query(puuid, region, queue_id, limit=self.cap), True, mastery, error=e)

        records = self.store.query(puuid, region, queue_id, limit=self.cap)
        # une page pleine mais entièrement ignorée (404, illisible) ne fait pas avancer end_time
        grew = len(records) > count
        if not grew and ids:
            log.info(f"Load more for {puuid[:8]}: {len(ids)} ids, none usable, stopping")
        has_more = grew and len(ids) >= wanted and len(records) < self.cap
        return LoadMoreResult(records, has_more, mastery)

    # ─── Joueurs & roster ────────────────────────────────────────────────────
    @retry(
        retry=retry_if_exception_type(UnavailableError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch_account(self, game_name: str, tag_line: str, region: str) -> Dict[str, Any]:
        acct = await self.client.get_account_by_name_tag(region, game_name, tag_line)
        if not acct:
            raise NotFoundError(f"Account not found: {game_name}#{tag_line}")
        return acct

    async def resolve_player(self, game_name: str, tag_line: str, region: Optional[str] = None) -> PlayerRef:
        """RiotID → PlayerRef, via player_cache_meta puis account-v1. NotFoundError remonte toujours."""
        region = (region or settings.DEFAULT_REGION).lower()
        meta = self.store.find_player(game_name, tag_line, region)
        if meta is not None:
            return PlayerRef(meta.puuid, meta.game_name, meta.tag_line, meta.region, meta.summoner_level)

        acct = await self._fetch_account(game_name, tag_line, region)
        puuid = acct["puuid"]
        level = None
        try:
            summ = await self.client.get_summoner_by_puuid(region, puuid)
            level = summ.get("summonerLevel") if summ else None
        except RiotAPIError as e:
            log.warning(f"Summoner lookup failed for {game_name}#{tag_line}: {describe_error(e)}")

        name = acct.get("gameName", game_name)
        tag = acct.get("tagLine", tag_line)
        self.store.save_meta(puuid, name, tag, region, level)
        return PlayerRef(puuid, name, tag, region, level)

    async def fetch_roster(
        self,
        players: Sequence[PlayerRef],
        callback: Optional[Callable[..., Any]] = None,
        queue_id: Optional[int] = None,
    ) -> List[RosterResult]:
        """
        Fetch cache-first pour tout un roster (max 12 joueurs).

        `callback(player, records, from_cache, mastery)` ; une erreur sur un
        joueur est renvoyée dans son RosterResult, jamais levée.
        """
        if len(players) > MAX_ROSTER:
            raise ValueError(f"At most {MAX_ROSTER} players per roster, got {len(players)}")
        share = self.roster_share(len(players))

        async def one(player: PlayerRef) -> RosterResult:
            async def forward(records, from_cache, mastery):
                await _emit(callback, player, records, from_cache, mastery)

            try:
                records = await self.fetch_with_cache(
                    player.puuid, player.region, queue_id, forward, requested_count=share,
                )
            except RiotAPIError as e:
                log.warning(f"Roster fetch failed for {player.riot_id}: {describe_error(e)}")
                return RosterResult(player, [], error=e)
            return RosterResult(player, records)

        return list(await asyncio.gather(*(one(p) for p in players)))


class _BatchFailed(Exception):
    """Interne : un appel du batch a échoué, `records` contient les autres."""

    def __init__(self, records: List[MatchRecord], cause: BaseException):
        super().__init__(str(cause))
        self.records = records
        self.cause = cause
