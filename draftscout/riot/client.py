# riot/client.py

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import aiohttp

# Mapping plateforme → région globale pour /match-v5 et /account-v1
REGION_GROUPS = {
    "euw1": "europe", "eun1": "europe", "tr1": "europe", "ru": "europe",
    "kr": "asia",   "jp1": "asia",
    "na1": "americas", "br1": "americas", "la1": "americas", "la2": "americas",
    "oc1": "sea", "ph2": "sea", "sg2": "sea", "th2": "sea", "tw2": "sea", "vn2": "sea",
}

log = logging.getLogger(__name__)


class RiotAPIError(Exception):
    """Base exception for Riot API errors (unclassified failures)."""
    code = "UNKNOWN"


class RateLimitError(RiotAPIError):
    """Raised when rate limit is exceeded and retry fails."""
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UnavailableError(RiotAPIError):
    """Raised when the API keeps failing with 5xx or transport errors."""
    code = "UNAVAILABLE"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class NotFoundError(RiotAPIError):
    """Raised when a resolvable entity (account, summoner) does not exist."""
    code = "NOT_FOUND"


def describe_error(exc: BaseException) -> str:
    """Message lisible pour l'appelant, selon la classe d'erreur."""
    if isinstance(exc, RateLimitError):
        minutes = max(1, round((exc.retry_after or 120) / 60))
        return f"Riot API is overloaded. Please try again in {minutes} minute(s)."
    if isinstance(exc, UnavailableError):
        return "Riot API is temporarily unavailable. Try again later."
    if isinstance(exc, NotFoundError):
        return str(exc) or "Player not found."
    return f"Failed to fetch match history: {exc}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After en secondes ; None si absent ou illisible."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def region_group(region: str) -> str:
    return REGION_GROUPS.get(region.lower(), "americas")


class Throttle:
    """Espacement minimal entre deux appels, partagé par tous les flux d'un client."""

    def __init__(self, min_interval: float = 1.2):
        self.min_interval = min_interval
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._last_call is not None:
                wait = self.min_interval - (now - self._last_call)
                if wait > 0:
                    log.debug(f"Throttle: waiting {wait:.2f}s")
                    await asyncio.sleep(wait)
            self._last_call = time.monotonic()


class RiotClient:
    """Async Riot API client with built-in throttling and error handling."""

    def __init__(
        self,
        api_key: str,
        throttle: Optional[Throttle] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.throttle = throttle or Throttle()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings) -> "RiotClient":
        return cls(
            settings.RIOT_API_KEY,
            throttle=Throttle(settings.RIOT_MIN_INTERVAL),
            max_retries=settings.RIOT_MAX_RETRIES,
            backoff_base=settings.RIOT_BACKOFF_BASE,
            timeout=settings.RIOT_TIMEOUT,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"X-Riot-Token": self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _backoff(self, attempt: int) -> float:
        return self.backoff_base * (2 ** attempt)

    async def call(self, url: str, max_retries: Optional[int] = None) -> Any:
        """
        Make one logical upstream call, throttled and retried.

        Args:
            url: The full URL to request
            max_retries: Attempt budget (defaults to the client's)

        Returns:
            JSON response from the API, or None on 404

        Raises:
            RateLimitError: When 429 responses exhaust the attempt budget
            UnavailableError: When 5xx/network errors exhaust the attempt budget
            RiotAPIError: For other API errors
        """
        attempts = max_retries or self.max_retries
        session = await self._get_session()
        last_cause: Optional[BaseException] = None

        for attempt in range(attempts):
            await self.throttle.wait()
            last_attempt = attempt == attempts - 1
            try:
                async with session.get(url) as resp:
                    if resp.status == 429:
                        retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                        if last_attempt:
                            raise RateLimitError(
                                f"Rate limit exceeded after {attempts} attempts",
                                retry_after=retry_after,
                            )
                        wait = retry_after if retry_after is not None else self._backoff(attempt)
                        log.warning(f"429 Rate limited, retrying after {wait}s (attempt {attempt + 1}/{attempts})")
                        await asyncio.sleep(wait)
                        continue

                    if resp.status == 404:
                        log.debug(f"404 Not Found: {url}")
                        return None

                    if resp.status >= 500:
                        last_cause = RiotAPIError(f"Server error {resp.status}")
                        if last_attempt:
                            break
                        wait = self._backoff(attempt)
                        log.warning(f"Server error {resp.status}, retrying in {wait}s")
                        await asyncio.sleep(wait)
                        continue

                    if resp.status >= 400:
                        raise RiotAPIError(f"API error {resp.status} for {url}")

                    return await resp.json()

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_cause = e
                if last_attempt:
                    break
                wait = self._backoff(attempt)
                log.warning(f"Network error, retrying in {wait}s: {e!r}")
                await asyncio.sleep(wait)

        raise UnavailableError(f"Riot API unavailable after {attempts} attempts", cause=last_cause)

    async def get_account_by_name_tag(self, region: str, game_name: str, tag_line: str) -> Optional[Dict[str, Any]]:
        """
        Get account by Riot ID (game name + tag).
        Account-V1: GET /riot/account/v1/accounts/by-riot-id/{gameName}/{tagLine}
        Routed via region group (americas/europe/asia/sea).
        """
        url = (
            f"https://{region_group(region)}.api.riotgames.com"
            f"/riot/account/v1/accounts/by-riot-id/{quote(game_name, safe='')}/{quote(tag_line, safe='')}"
        )
        return await self.call(url)

    async def get_summoner_by_puuid(self, region: str, puuid: str) -> Optional[Dict[str, Any]]:
        """Get summoner information by PUUID."""
        url = f"https://{region.lower()}.api.riotgames.com/lol/summoner/v4/summoners/by-puuid/{puuid}"
        return await self.call(url)

    async def get_match_ids(
        self,
        region: str,
        puuid: str,
        count: int = 20,
        start: int = 0,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        queue: Optional[int] = None,
    ) -> List[str]:
        """Get list of match IDs for a player, newest first. Times are epoch seconds."""
        params: Dict[str, Any] = {"start": start, "count": count}
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time
        if queue is not None:
            params["queue"] = queue
        url = (
            f"https://{region_group(region)}.api.riotgames.com"
            f"/lol/match/v5/matches/by-puuid/{puuid}/ids?{urlencode(params)}"
        )
        result = await self.call(url)
        return result if result is not None else []

    async def get_match_by_id(self, region: str, match_id: str) -> Optional[Dict[str, Any]]:
        """Get detailed match information by match ID."""
        url = f"https://{region_group(region)}.api.riotgames.com/lol/match/v5/matches/{match_id}"
        return await self.call(url)

    async def get_champion_masteries(self, region: str, puuid: str) -> List[Dict[str, Any]]:
        """Get every champion mastery entry for a player."""
        url = (
            f"https://{region.lower()}.api.riotgames.com"
            f"/lol/champion-mastery/v4/champion-masteries/by-puuid/{puuid}"
        )
        result = await self.call(url)
        return result if result is not None else []
