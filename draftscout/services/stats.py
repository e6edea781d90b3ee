# draftscout/services/stats.py
# ============================================================================
# Statistiques par champion d'un joueur (fonction pure, rien n'est persisté)
# Tri : parties ↓ → winrate ↓ → KDA ↓
# ============================================================================

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from draftscout.models.match_record import ChampionMastery, MatchRecord


@dataclass(frozen=True)
class ChampionStat:
    champion_id: int
    champion_name: str
    games: int
    wins: int
    losses: int
    total_kills: int
    total_deaths: int
    total_assists: int
    avg_kills: float
    avg_deaths: float
    avg_assists: float
    kda: float
    win_rate: int                       # pourcentage arrondi
    mastery_level: Optional[int] = None
    mastery_points: Optional[int] = None


@dataclass
class _Tally:
    champion_name: str
    games: int = 0
    wins: int = 0
    kills: int = 0
    deaths: int = 0
    assists: int = 0


def kda_ratio(avg_kills: float, avg_deaths: float, avg_assists: float) -> float:
    """(K + A) / D ; zéro mort → K + A."""
    if avg_deaths > 0:
        return (avg_kills + avg_assists) / avg_deaths
    return avg_kills + avg_assists


def _finalize(champion_id: int, t: _Tally, mastery: Optional[ChampionMastery]) -> ChampionStat:
    avg_k = t.kills / t.games
    avg_d = t.deaths / t.games
    avg_a = t.assists / t.games
    return ChampionStat(
        champion_id=champion_id,
        champion_name=t.champion_name,
        games=t.games,
        wins=t.wins,
        losses=t.games - t.wins,
        total_kills=t.kills,
        total_deaths=t.deaths,
        total_assists=t.assists,
        avg_kills=avg_k,
        avg_deaths=avg_d,
        avg_assists=avg_a,
        kda=kda_ratio(avg_k, avg_d, avg_a),
        win_rate=round(t.wins / t.games * 100),
        mastery_level=mastery.level if mastery else None,
        mastery_points=mastery.points if mastery else None,
    )


def _sort_key(s: ChampionStat):
    return (-s.games, -(s.wins / s.games), -s.kda, s.champion_name, s.champion_id)


def aggregate_champion_stats(
    records: Iterable[MatchRecord],
    puuid: str,
    masteries: Optional[Iterable[ChampionMastery]] = None,
) -> List[ChampionStat]:
    """
    Réduit les matchs d'un joueur en statistiques par champion.

    Args:
        records: matchs en cache (les autres joueurs sont ignorés)
        puuid: joueur ciblé
        masteries: mastery optionnelle, fusionnée sur les champions joués

    Returns:
        list[ChampionStat] triée par parties, winrate puis KDA (décroissants)
    """
    tallies: Dict[int, _Tally] = {}
    for rec in records:
        if rec.puuid != puuid:
            continue
        t = tallies.setdefault(rec.champion_id, _Tally(champion_name=rec.champion_name))
        t.games += 1
        t.wins += int(rec.win)
        t.kills += rec.kills
        t.deaths += rec.deaths
        t.assists += rec.assists

    by_champion = {m.champion_id: m for m in masteries or ()}
    stats = [_finalize(cid, t, by_champion.get(cid)) for cid, t in tallies.items()]
    return sorted(stats, key=_sort_key)
