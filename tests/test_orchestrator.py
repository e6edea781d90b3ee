"""Tests for the cache-first retrieval / refresh engine."""

import asyncio
import datetime as dt
import logging

import pytest

from draftscout.models.match_record import ChampionMastery, to_epoch_s
from draftscout.riot.client import NotFoundError, RateLimitError, UnavailableError
from draftscout.services.orchestrator import CacheOrchestrator, PlayerRef

from conftest import BASE_DATE, PUUID, QUEUE, REGION, FakeRiotClient


class Recorder:
    """Progress callback that remembers what it saw and how many API calls preceded it."""

    def __init__(self, riot=None):
        self.riot = riot
        self.events = []
        self.calls_before = []

    def __call__(self, records, from_cache, mastery):
        self.events.append(([r.match_id for r in records], from_cache, list(mastery)))
        self.calls_before.append(len(self.riot.calls) if self.riot else None)


class TrackingRiot(FakeRiotClient):
    """Counts match-v5 detail calls in flight at the same time."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_match_by_id(self, region, match_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        try:
            return await super().get_match_by_id(region, match_id)
        finally:
            self.in_flight -= 1


def make_orchestrator(riot, store, cap=200):
    return CacheOrchestrator(riot, store, cap=cap, batch_size=3, default_count=60, queue_id=QUEUE)


def seed(riot, store, make_record, cached, upstream):
    """`upstream` matches exist on the API, the `cached` subset is already stored."""
    for n in upstream:
        riot.add_match(n)
    store.upsert([make_record(n) for n in cached])


def ids(*numbers):
    return [f"EUW1_{n:06d}" for n in numbers]


@pytest.mark.asyncio
class TestCacheMiss:

    async def test_full_fetch_emits_after_each_batch(self, riot, store):
        for n in range(7):
            riot.add_match(n)
        riot.masteries = [{"championId": 1, "championLevel": 6, "championPoints": 70000}]
        recorder = Recorder()

        records = await make_orchestrator(riot, store).fetch_with_cache(PUUID, "EUW1", QUEUE, recorder)

        assert [len(e[0]) for e in recorder.events] == [3, 6, 7]
        assert all(from_cache is False for _, from_cache, _ in recorder.events)
        assert recorder.events[0][0] == ids(6, 5, 4)
        assert recorder.events[0][2] == [ChampionMastery(1, 6, 70000)]
        assert len(records) == 7
        assert store.count(PUUID, REGION, QUEUE) == 7
        assert store.load_mastery(PUUID) == [ChampionMastery(1, 6, 70000)]
        assert riot.endpoint_calls("ids")[0]["count"] == 60

    async def test_batches_bound_concurrent_calls(self, store):
        riot = TrackingRiot()
        for n in range(8):
            riot.add_match(n)

        await make_orchestrator(riot, store).fetch_with_cache(PUUID, REGION, QUEUE)

        assert riot.max_in_flight == 3
        assert len(riot.endpoint_calls("match")) == 8

    async def test_requested_count_never_exceeds_cap(self, riot, store):
        for n in range(9):
            riot.add_match(n)

        records = await make_orchestrator(riot, store, cap=5).fetch_with_cache(PUUID, REGION, QUEUE)

        assert len(records) == 5
        assert store.count(PUUID, REGION, QUEUE) == 5

    async def test_rate_limit_without_cache_propagates(self, riot, store):
        riot.fail["ids"] = RateLimitError("slow down", retry_after=120)
        recorder = Recorder()

        with pytest.raises(RateLimitError):
            await make_orchestrator(riot, store).fetch_with_cache(PUUID, REGION, QUEUE, recorder)

        assert recorder.events == []

    async def test_failed_batch_keeps_what_was_fetched(self, riot, store):
        for n in range(6):
            riot.add_match(n)
        riot.fail_matches["EUW1_000001"] = UnavailableError("down")

        with pytest.raises(UnavailableError):
            await make_orchestrator(riot, store).fetch_with_cache(PUUID, REGION, QUEUE)

        cached = {r.match_id for r in store.query(PUUID, REGION, QUEUE)}
        assert cached == set(ids(5, 4, 3, 2, 0))

    async def test_mastery_failure_is_not_fatal(self, riot, store):
        riot.add_match(1)
        riot.fail["mastery"] = UnavailableError("down")
        recorder = Recorder()

        records = await make_orchestrator(riot, store).fetch_with_cache(PUUID, REGION, QUEUE, recorder)

        assert len(records) == 1
        assert recorder.events[-1][2] == []


@pytest.mark.asyncio
class TestCacheHit:

    async def test_cached_data_is_emitted_before_any_call(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(3))
        store.save_mastery(PUUID, REGION, [ChampionMastery(1, 4, 9000)])
        recorder = Recorder(riot)
        orchestrator = make_orchestrator(riot, store)

        records = await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, recorder)

        assert recorder.calls_before[0] == 0
        assert recorder.events[0] == (ids(2, 1, 0), True, [ChampionMastery(1, 4, 9000)])
        assert [r.match_id for r in records] == ids(2, 1, 0)
        await orchestrator.wait_for_background()

    async def test_no_op_refresh_issues_only_the_probe(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(5), upstream=range(5))
        recorder = Recorder(riot)
        orchestrator = make_orchestrator(riot, store)

        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, recorder)
        await orchestrator.wait_for_background()

        assert len(riot.calls) == 1
        name, args = riot.calls[0]
        assert name == "ids" and args["count"] == 1
        assert len(recorder.events) == 1

    async def test_new_matches_are_backfilled_and_re_emitted(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(5))
        recorder = Recorder(riot)
        orchestrator = make_orchestrator(riot, store)

        returned = await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, recorder)
        assert len(returned) == 3
        await orchestrator.wait_for_background()

        assert [e[1] for e in recorder.events] == [True, False]
        assert recorder.events[1][0] == ids(4, 3, 2, 1, 0)
        assert {a["match_id"] for a in riot.endpoint_calls("match")} == set(ids(4, 3))
        backfill = riot.endpoint_calls("ids")[1]
        assert backfill["start_time"] == to_epoch_s(BASE_DATE + dt.timedelta(hours=2)) + 1

    @pytest.mark.parametrize("error", [
        RateLimitError("slow down", retry_after=60),
        UnavailableError("down"),
    ])
    async def test_refresh_failure_keeps_cached_data(self, riot, store, make_record, caplog, error):
        seed(riot, store, make_record, cached=range(3), upstream=range(6))
        riot.fail["ids"] = error
        recorder = Recorder(riot)
        orchestrator = make_orchestrator(riot, store)

        with caplog.at_level(logging.WARNING, logger="draftscout"):
            records = await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, recorder)
            await orchestrator.wait_for_background()

        assert [r.match_id for r in records] == ids(2, 1, 0)
        assert recorder.events == [(ids(2, 1, 0), True, [])]
        assert store.count(PUUID, REGION, QUEUE) == 3
        assert "keeping cache" in caplog.text

    async def test_backfill_failure_mid_way_is_contained(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(2), upstream=range(8))
        riot.fail_matches["EUW1_000003"] = RateLimitError("slow down")
        recorder = Recorder(riot)
        orchestrator = make_orchestrator(riot, store)

        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, recorder)
        await orchestrator.wait_for_background()

        assert len(recorder.events) == 1
        assert store.count(PUUID, REGION, QUEUE) == 7

    async def test_one_refresh_per_scope_at_a_time(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(3))
        orchestrator = make_orchestrator(riot, store)

        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE)
        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE)
        await orchestrator.wait_for_background()

        assert len(riot.endpoint_calls("ids")) == 1

    async def test_observer_joining_a_running_refresh_gets_the_update(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(6))
        first, second = Recorder(), Recorder()
        orchestrator = make_orchestrator(riot, store)

        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, first)
        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, second)
        await orchestrator.wait_for_background()

        refreshed = (ids(5, 4, 3, 2, 1, 0), False, [])
        assert first.events == [(ids(2, 1, 0), True, []), refreshed]
        assert second.events == [(ids(2, 1, 0), True, []), refreshed]
        assert len(riot.endpoint_calls("ids")) == 2

    async def test_observers_are_dropped_once_refresh_ends(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(4))
        first, later = Recorder(), Recorder()
        orchestrator = make_orchestrator(riot, store)

        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, first)
        await orchestrator.wait_for_background()
        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, later)
        await orchestrator.wait_for_background()

        assert len(first.events) == 2
        assert later.events == [(ids(3, 2, 1, 0), True, [])]

    async def test_async_callback_is_awaited(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(2), upstream=range(3))
        seen = []

        async def callback(records, from_cache, mastery):
            await asyncio.sleep(0)
            seen.append((len(records), from_cache))

        orchestrator = make_orchestrator(riot, store)
        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE, callback)
        await orchestrator.wait_for_background()

        assert seen == [(2, True), (3, False)]


@pytest.mark.asyncio
class TestRollingCap:

    async def test_backfill_evicts_oldest_to_stay_under_cap(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(4), upstream=range(7))
        orchestrator = make_orchestrator(riot, store, cap=5)

        records = await orchestrator.refresh(PUUID, REGION, QUEUE)

        assert [r.match_id for r in records] == ids(6, 5, 4, 3, 2)
        assert store.count(PUUID, REGION, QUEUE) == 5

    async def test_cap_holds_after_every_write(self, riot, store, make_record):
        orchestrator = make_orchestrator(riot, store, cap=5)
        for n in range(3):
            riot.add_match(n)
        await orchestrator.fetch_with_cache(PUUID, REGION, QUEUE)

        for step in range(4):
            riot.add_match(10 + 2 * step)
            riot.add_match(11 + 2 * step)
            await orchestrator.refresh(PUUID, REGION, QUEUE)
            assert store.count(PUUID, REGION, QUEUE) <= 5

        assert store.query(PUUID, REGION, QUEUE, limit=1)[0].match_id == "EUW1_000017"

    async def test_other_queues_are_not_merged_into_scope(self, riot, store):
        riot.add_match(1)
        riot.add_match(2, queue_id=440)

        await make_orchestrator(riot, store).fetch_with_cache(PUUID, REGION, QUEUE)

        assert store.count(PUUID, REGION, QUEUE) == 1
        assert store.count(PUUID, REGION, 440) == 0


@pytest.mark.asyncio
class TestLoadMore:

    async def test_full_cache_returns_without_any_call(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(5), upstream=range(9))

        result = await make_orchestrator(riot, store, cap=5).load_more_matches(PUUID, REGION, QUEUE, 33)

        assert result.has_more is False
        assert len(result.records) == 5
        assert riot.calls == []

    async def test_pages_backwards_from_oldest_cached_game(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(5, 8), upstream=range(8))
        orchestrator = make_orchestrator(riot, store, cap=10)

        first = await orchestrator.load_more_matches(PUUID, REGION, QUEUE, 3)

        assert first.has_more is True
        assert [r.match_id for r in first.records] == ids(7, 6, 5, 4, 3, 2)
        assert riot.endpoint_calls("ids")[0]["end_time"] == to_epoch_s(BASE_DATE + dt.timedelta(hours=5)) - 1

        second = await orchestrator.load_more_matches(PUUID, REGION, QUEUE, 10)

        assert riot.endpoint_calls("ids")[1]["count"] == 4
        assert second.has_more is False
        assert len(second.records) == 8

    async def test_reaching_the_cap_ends_paging(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(5, 8), upstream=range(8))

        result = await make_orchestrator(riot, store, cap=6).load_more_matches(PUUID, REGION, QUEUE, 10)

        assert len(result.records) == 6
        assert result.has_more is False

    async def test_full_page_of_unusable_matches_ends_paging(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(5, 8), upstream=range(8))
        riot.missing.update(ids(4, 3, 2))
        orchestrator = make_orchestrator(riot, store, cap=10)

        result = await orchestrator.load_more_matches(PUUID, REGION, QUEUE, 3)

        assert len(riot.endpoint_calls("match")) == 3
        assert [r.match_id for r in result.records] == ids(7, 6, 5)
        assert result.has_more is False

    async def test_rate_limit_with_cache_is_swallowed(self, riot, store, make_record):
        seed(riot, store, make_record, cached=range(3), upstream=range(6))
        riot.fail["ids"] = RateLimitError("slow down")

        result = await make_orchestrator(riot, store).load_more_matches(PUUID, REGION, QUEUE, 10)

        assert isinstance(result.error, RateLimitError)
        assert [r.match_id for r in result.records] == ids(2, 1, 0)

    async def test_rate_limit_without_cache_propagates(self, riot, store):
        riot.fail["ids"] = RateLimitError("slow down")

        with pytest.raises(RateLimitError):
            await make_orchestrator(riot, store).load_more_matches(PUUID, REGION, QUEUE, 10)


@pytest.mark.asyncio
class TestPlayers:

    async def test_resolve_player_caches_the_lookup(self, riot, store):
        riot.accounts[("faker", "kr1")] = {"puuid": "p-faker", "gameName": "Faker", "tagLine": "KR1"}
        orchestrator = make_orchestrator(riot, store)

        ref = await orchestrator.resolve_player("Faker", "KR1", "KR")
        riot.calls.clear()
        again = await orchestrator.resolve_player("faker", "kr1", "kr")

        assert ref == PlayerRef("p-faker", "Faker", "KR1", "kr", 312)
        assert again == ref
        assert riot.calls == []

    async def test_unknown_account_is_not_found(self, riot, store):
        with pytest.raises(NotFoundError):
            await make_orchestrator(riot, store).resolve_player("Nobody", "000", "euw1")

        assert len(riot.endpoint_calls("account")) == 1

    async def test_roster_share(self, riot, store):
        orchestrator = make_orchestrator(riot, store)
        assert orchestrator.roster_share(1) == 60
        assert orchestrator.roster_share(6) == 33
        assert orchestrator.roster_share(12) == 16

    async def test_fetch_roster_tags_each_player(self, riot, store):
        players = [PlayerRef("p-a", "A", "1", REGION), PlayerRef("p-b", "B", "1", REGION)]
        riot.add_match(1, puuid="p-a")
        riot.add_match(2, puuid="p-b")
        riot.add_match(3, puuid="p-b")
        seen = {}

        results = await make_orchestrator(riot, store).fetch_roster(
            players, lambda player, records, from_cache, mastery: seen.update({player.puuid: len(records)})
        )

        assert [len(r.records) for r in results] == [1, 2]
        assert seen == {"p-a": 1, "p-b": 2}
        assert all(call["count"] == 60 for call in riot.endpoint_calls("ids"))

    async def test_roster_errors_are_returned(self, riot, store):
        riot.fail["ids"] = RateLimitError("slow down")
        players = [PlayerRef("p-a", "A", "1", REGION)]

        [result] = await make_orchestrator(riot, store).fetch_roster(players)

        assert isinstance(result.error, RateLimitError)
        assert result.records == []

    async def test_roster_is_limited_to_twelve(self, riot, store):
        players = [PlayerRef(f"p-{i}", "X", str(i), REGION) for i in range(13)]
        with pytest.raises(ValueError):
            await make_orchestrator(riot, store).fetch_roster(players)
