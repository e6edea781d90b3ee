# draftscout/models/match_record.py
# ============================================================================
# Enregistrements immuables d'une participation à un match + mastery
# Conversions explicites : JSON match-v5 → MatchRecord, ligne SQL ↔ MatchRecord
# ============================================================================

from __future__ import annotations
import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional


def from_epoch_ms(ms: int) -> dt.datetime:
    """Timestamp Riot (ms) → datetime UTC naïf."""
    return dt.datetime.fromtimestamp(ms / 1000, tz=dt.timezone.utc).replace(tzinfo=None)


def to_epoch_s(when: dt.datetime) -> int:
    """datetime (naïf = UTC) → secondes epoch (paramètres startTime/endTime)."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return int(when.timestamp())


@dataclass(frozen=True)
class MatchRecord:
    """La participation d'un joueur à un match, telle que mise en cache."""
    match_id: str
    puuid: str
    region: str
    champion_id: int
    champion_name: str
    kills: int
    deaths: int
    assists: int
    win: bool
    game_date: dt.datetime
    queue_id: int
    fetched_at: dt.datetime

    @property
    def key(self) -> tuple[str, str]:
        return self.match_id, self.puuid


@dataclass(frozen=True)
class ChampionMastery:
    champion_id: int
    level: int
    points: int
    last_play_time: Optional[int] = None

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "ChampionMastery":
        return cls(
            champion_id=int(raw["championId"]),
            level=int(raw.get("championLevel", 0)),
            points=int(raw.get("championPoints", 0)),
            last_play_time=raw.get("lastPlayTime"),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "championId": self.champion_id,
            "championLevel": self.level,
            "championPoints": self.points,
            "lastPlayTime": self.last_play_time,
        }


def masteries_from_api(raw: Optional[List[Mapping[str, Any]]]) -> List[ChampionMastery]:
    return [ChampionMastery.from_api(m) for m in raw or [] if "championId" in m]


def record_from_match(
    payload: Mapping[str, Any],
    puuid: str,
    region: str,
    fetched_at: Optional[dt.datetime] = None,
) -> Optional[MatchRecord]:
    """
    Extrait la ligne du joueur `puuid` d'une réponse match-v5.

    Returns:
        MatchRecord, ou None si le joueur n'a pas participé au match

    Raises:
        ValueError: si la réponse ne contient pas les champs attendus
    """
    try:
        match_id = payload["metadata"]["matchId"]
        info = payload["info"]
        participants = info["participants"]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed match payload: missing {e}") from e

    part = next((p for p in participants if p.get("puuid") == puuid), None)
    if part is None:
        return None

    try:
        return MatchRecord(
            match_id=str(match_id),
            puuid=puuid,
            region=region.lower(),
            champion_id=int(part["championId"]),
            champion_name=str(part.get("championName", "")),
            kills=max(0, int(part["kills"])),
            deaths=max(0, int(part["deaths"])),
            assists=max(0, int(part["assists"])),
            win=bool(part["win"]),
            game_date=from_epoch_ms(info["gameCreation"]),
            queue_id=int(info.get("queueId", 0)),
            fetched_at=fetched_at or dt.datetime.now(dt.timezone.utc).replace(tzinfo=None),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed participant in {match_id}: {e}") from e


def record_from_row(row: Any) -> MatchRecord:
    """Ligne `cached_matches` (ORM) → MatchRecord."""
    if row.game_date is None or row.match_id is None or row.puuid is None:
        raise ValueError("Cached row is missing its key or game date")
    return MatchRecord(
        match_id=row.match_id,
        puuid=row.puuid,
        region=row.region,
        champion_id=int(row.champion_id),
        champion_name=row.champion_name,
        kills=int(row.kills),
        deaths=int(row.deaths),
        assists=int(row.assists),
        win=bool(row.win),
        game_date=row.game_date,
        queue_id=int(row.queue_id),
        fetched_at=row.fetched_at,
    )


def row_values(record: MatchRecord) -> Dict[str, Any]:
    """MatchRecord → colonnes `cached_matches`."""
    return {
        "match_id": record.match_id,
        "puuid": record.puuid,
        "region": record.region,
        "champion_id": record.champion_id,
        "champion_name": record.champion_name,
        "kills": record.kills,
        "deaths": record.deaths,
        "assists": record.assists,
        "win": record.win,
        "game_date": record.game_date,
        "queue_id": record.queue_id,
        "fetched_at": record.fetched_at,
    }
