"""Shared fixtures: in-memory match cache and a scripted Riot API."""

import datetime as dt
import os

# settings est instancié à l'import : il faut ces variables avant tout import draftscout
os.environ.setdefault("RIOT_API_KEY", "RGAPI-test-key-00000000")
os.environ.setdefault("DB_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from draftscout.cache.store import MatchCacheStore
from draftscout.database import init_db, make_session_factory
from draftscout.models.match_record import MatchRecord

BASE_DATE = dt.datetime(2026, 9, 1, 12, 0, 0)
PUUID = "puuid-alpha-0001"
REGION = "euw1"
QUEUE = 420


def _epoch_ms(when: dt.datetime) -> int:
    return int(when.replace(tzinfo=dt.timezone.utc).timestamp() * 1000)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    init_db(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> MatchCacheStore:
    return MatchCacheStore(session_factory)


@pytest.fixture
def make_record():
    """Factory: make_record(n) → match n hours after BASE_DATE."""
    def _make(n, puuid=PUUID, champion_id=1, champion_name="Ahri", win=True,
              kills=5, deaths=2, assists=7, region=REGION, queue_id=QUEUE,
              fetched_at=None):
        return MatchRecord(
            match_id=f"EUW1_{n:06d}",
            puuid=puuid,
            region=region,
            champion_id=champion_id,
            champion_name=champion_name,
            kills=kills,
            deaths=deaths,
            assists=assists,
            win=win,
            game_date=BASE_DATE + dt.timedelta(hours=n),
            queue_id=queue_id,
            fetched_at=fetched_at or BASE_DATE + dt.timedelta(days=10),
        )
    return _make


class FakeRiotClient:
    """Riot API scripté : un historique en mémoire, et chaque appel est journalisé."""

    def __init__(self):
        self.history = []           # payloads match-v5, du plus récent au plus ancien
        self.calls = []             # (endpoint, args)
        self.masteries = []
        self.accounts = {}
        self.fail = {}              # endpoint → exception
        self.fail_matches = {}      # match_id → exception
        self.missing = set()        # match_id → 404 sur match-v5

    def add_match(self, n, puuid=PUUID, champion_id=1, champion_name="Ahri", win=True,
                  kills=5, deaths=2, assists=7, queue_id=QUEUE):
        payload = {
            "metadata": {"matchId": f"EUW1_{n:06d}", "participants": [puuid, "someone-else"]},
            "info": {
                "gameCreation": _epoch_ms(BASE_DATE + dt.timedelta(hours=n)),
                "queueId": queue_id,
                "participants": [
                    {"puuid": "someone-else", "championId": 99, "championName": "Teemo",
                     "kills": 0, "deaths": 9, "assists": 0, "win": not win},
                    {"puuid": puuid, "championId": champion_id, "championName": champion_name,
                     "kills": kills, "deaths": deaths, "assists": assists, "win": win},
                ],
            },
        }
        self.history.append(payload)
        self.history.sort(key=lambda p: p["info"]["gameCreation"], reverse=True)
        return payload["metadata"]["matchId"]

    def _maybe_fail(self, endpoint):
        exc = self.fail.get(endpoint)
        if exc is not None:
            raise exc

    def endpoint_calls(self, endpoint):
        return [args for name, args in self.calls if name == endpoint]

    async def get_match_ids(self, region, puuid, count=20, start=0, start_time=None, end_time=None, queue=None):
        self.calls.append(("ids", dict(count=count, start=start, start_time=start_time,
                                       end_time=end_time, queue=queue)))
        self._maybe_fail("ids")
        ids = []
        for p in self.history:
            if puuid not in p["metadata"]["participants"]:
                continue
            created_s = p["info"]["gameCreation"] // 1000
            if start_time is not None and created_s < start_time:
                continue
            if end_time is not None and created_s > end_time:
                continue
            if queue is not None and p["info"]["queueId"] != queue:
                continue
            ids.append(p["metadata"]["matchId"])
        return ids[start:start + count]

    async def get_match_by_id(self, region, match_id):
        self.calls.append(("match", dict(match_id=match_id)))
        self._maybe_fail("match")
        if match_id in self.fail_matches:
            raise self.fail_matches[match_id]
        if match_id in self.missing:
            return None
        return next((p for p in self.history if p["metadata"]["matchId"] == match_id), None)

    async def get_champion_masteries(self, region, puuid):
        self.calls.append(("mastery", dict(puuid=puuid)))
        self._maybe_fail("mastery")
        return list(self.masteries)

    async def get_account_by_name_tag(self, region, game_name, tag_line):
        self.calls.append(("account", dict(game_name=game_name, tag_line=tag_line)))
        self._maybe_fail("account")
        return self.accounts.get((game_name.lower(), tag_line.lower()))

    async def get_summoner_by_puuid(self, region, puuid):
        self.calls.append(("summoner", dict(puuid=puuid)))
        self._maybe_fail("summoner")
        return {"puuid": puuid, "summonerLevel": 312}


@pytest.fixture
def riot() -> FakeRiotClient:
    return FakeRiotClient()
