#!/usr/bin/env python3
"""
tools/scout.py
Affiche les champions joués récemment par un ou plusieurs joueurs (max 12).

    python -m draftscout.tools.scout "Faker#KR1" "Chovy#KR1" --region kr

Le cache est lu d'abord ; le refresh en arrière-plan est attendu avant de
quitter et le tableau est réaffiché s'il a apporté de nouveaux matchs.
"""

from __future__ import annotations

import argparse
import asyncio
import os
from typing import List, Optional

from draftscout.cache.store import MatchCacheStore
from draftscout.config import settings
from draftscout.database import init_db
from draftscout.logging_config import get_logger, setup_logging
from draftscout.models.match_record import ChampionMastery, MatchRecord
from draftscout.riot.client import RiotAPIError, RiotClient, describe_error
from draftscout.services.orchestrator import MAX_ROSTER, CacheOrchestrator, PlayerRef
from draftscout.services.stats import ChampionStat, aggregate_champion_stats

log = get_logger("draftscout.tools.scout")


def format_table(stats: List[ChampionStat], limit: int = 10) -> str:
    if not stats:
        return "  (aucune partie)"
    lines = [f"  {'Champion':<14}{'G':>4}{'W-L':>8}{'WR':>6}{'KDA':>7}  K/D/A           M"]
    for s in stats[:limit]:
        mastery = f"M{s.mastery_level}" if s.mastery_level else ""
        lines.append(
            f"  {s.champion_name:<14}{s.games:>4}{f'{s.wins}-{s.losses}':>8}{s.win_rate:>5}%"
            f"{s.kda:>7.2f}  {s.avg_kills:.1f}/{s.avg_deaths:.1f}/{s.avg_assists:.1f}"
            f"{'':<4}{mastery}"
        )
    return "\n".join(lines)


def parse_riot_id(value: str) -> tuple[str, str]:
    parts = value.split("#")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise argparse.ArgumentTypeError(f"Invalid RiotID {value!r}, expected GameName#TAG")
    return parts[0], parts[1]


async def run(riot_ids: List[tuple[str, str]], region: str, queue_id: int, count: Optional[int] = None) -> int:
    init_db()
    async with RiotClient.from_settings(settings) as client:
        orchestrator = CacheOrchestrator(client, MatchCacheStore(), default_count=count, queue_id=queue_id)

        players: List[PlayerRef] = []
        for game_name, tag_line in riot_ids:
            try:
                players.append(await orchestrator.resolve_player(game_name, tag_line, region))
            except RiotAPIError as e:
                log.warning(f"Could not resolve {game_name}#{tag_line}: {e}")
                print(f"❌ {game_name}#{tag_line}: {describe_error(e)}")
        if not players:
            return 1

        def show(player: PlayerRef, records: List[MatchRecord], from_cache: bool,
                 mastery: List[ChampionMastery]) -> None:
            origin = "cache" if from_cache else "Riot API"
            print(f"\n▶ {player.riot_id} – {len(records)} parties ({origin})")
            print(format_table(aggregate_champion_stats(records, player.puuid, mastery)))

        results = await orchestrator.fetch_roster(players, show)
        await orchestrator.wait_for_background()

        failed = [r for r in results if r.error is not None]
        for r in failed:
            print(f"❌ {r.player.riot_id}: {describe_error(r.error)}")
        return 1 if len(failed) == len(results) else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Show recently played champions for up to 12 players.")
    parser.add_argument("riot_ids", nargs="+", type=parse_riot_id, metavar="GameName#TAG")
    parser.add_argument("--region", default=settings.DEFAULT_REGION)
    parser.add_argument("--queue", type=int, default=settings.DEFAULT_QUEUE_ID)
    parser.add_argument("--count", type=int, default=None,
                        help=f"matches per player on a cold cache (default: {settings.DEFAULT_MATCH_COUNT})")
    args = parser.parse_args(argv)

    if len(args.riot_ids) > MAX_ROSTER:
        parser.error(f"at most {MAX_ROSTER} players")

    setup_logging(level=os.getenv("LOG_LEVEL", settings.LOG_LEVEL))
    return asyncio.run(run(args.riot_ids, args.region, args.queue, args.count))


if __name__ == "__main__":
    raise SystemExit(main())
