"""Observation of live and finished matches through the Riot API."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from bot.services.retry_policy import RetryPolicy
from config import Config
from errors import RiotApiError, RiotNotFound, RiotRateLimited, RiotTransientError
from models import CompletedMatch, LiveMatch

logger = logging.getLogger(__name__)

ARAM_QUEUE_ID = 450


class GameObserver(ABC):
    """Read-only view of the game provider used by the progress engine."""

    @abstractmethod
    async def get_live_match(self, puuid: str, platform: str | None = None) -> Optional[LiveMatch]:
        """Return the match ``puuid`` is playing right now, or None."""

    @abstractmethod
    async def get_last_group_match(self, puuids: list[str], lookback: int = 5) -> Optional[CompletedMatch]:
        """Return the most recent valid finished match played by all ``puuids`` together."""

    async def close(self) -> None:
        """Release any held resources."""


def _retry_after(headers: Any) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class RiotGameObserver(GameObserver):
    """``GameObserver`` backed by the spectator-v5 and match-v5 endpoints."""

    def __init__(
        self,
        api_key: str | None = None,
        platform: str | None = None,
        region: str | None = None,
        session: aiohttp.ClientSession | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        remake_threshold_seconds: int | None = None,
        queue_id: int | None = ARAM_QUEUE_ID,
    ):
        self.api_key = api_key if api_key is not None else Config.RIOT_API_KEY
        self.platform = platform or Config.RIOT_PLATFORM
        self.region = region or Config.RIOT_REGION
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.RIOT_TIMEOUT_SECONDS)
        self.remake_threshold_seconds = (
            remake_threshold_seconds if remake_threshold_seconds is not None else Config.REMAKE_THRESHOLD_SECONDS
        )
        self.queue_id = queue_id
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, url: str, params: dict | None = None) -> Any:
        session = await self._get_session()
        headers = {"X-Riot-Token": self.api_key}
        async with session.get(url, headers=headers, params=params, timeout=self.timeout) as resp:
            if resp.status == 200:
                return await resp.json()

            text = await resp.text()
            if resp.status == 404:
                raise RiotNotFound(resp.status, url, text)
            if resp.status == 429:
                raise RiotRateLimited(url, _retry_after(resp.headers))
            if resp.status >= 500:
                raise RiotTransientError(resp.status, url, text)
            raise RiotApiError(resp.status, url, text)

    async def _get_json(self, url: str, params: dict | None = None) -> Any:
        return await self.retry_policy.run(lambda: self._request(url, params), description=url)

    async def get_live_match(self, puuid: str, platform: str | None = None) -> Optional[LiveMatch]:
        platform = platform or self.platform
        url = (
            f"https://{platform}.api.riotgames.com"
            f"/lol/spectator/v5/active-games/by-summoner/{quote(puuid, safe='')}"
        )
        try:
            payload = await self._get_json(url)
        except RiotNotFound:
            return None

        queue_id = payload.get("gameQueueConfigId")
        if self.queue_id is not None and queue_id != self.queue_id:
            logger.debug(f"Player {puuid[:8]} is in queue {queue_id}, ignoring")
            return None
        return LiveMatch(match_id=str(payload["gameId"]), queue_id=queue_id)

    async def get_last_group_match(self, puuids: list[str], lookback: int = 5) -> Optional[CompletedMatch]:
        if not puuids:
            return None

        base_url = f"https://{self.region}.api.riotgames.com/lol/match/v5/matches"
        params: dict[str, Any] = {"count": lookback}
        if self.queue_id is not None:
            params["queue"] = self.queue_id
        match_ids = await self._get_json(f"{base_url}/by-puuid/{quote(puuids[0], safe='')}/ids", params=params)

        # Most recent first
        for match_id in match_ids or []:
            try:
                match = await self._get_json(f"{base_url}/{match_id}")
            except RiotNotFound:
                continue

            result = self.parse_group_match(match, puuids)
            if result is not None:
                return result

        return None

    def parse_group_match(self, match: dict, puuids: list[str]) -> Optional[CompletedMatch]:
        """Turn a match-v5 payload into a ``CompletedMatch`` if the whole group played it.

        Returns None for other queues, matches missing a player, players on
        different teams, and remakes.
        """
        info = match.get("info") or {}
        metadata = match.get("metadata") or {}

        if self.queue_id is not None and info.get("queueId") != self.queue_id:
            return None

        by_puuid = {p.get("puuid"): p for p in info.get("participants", [])}
        if not all(puuid in by_puuid for puuid in puuids):
            return None
        players = [by_puuid[puuid] for puuid in puuids]

        if len({p.get("teamId") for p in players}) != 1:
            return None

        duration = int(info.get("gameDuration") or 0)
        if "gameEndTimestamp" not in info:
            # Older payloads report the duration in milliseconds
            duration //= 1000
        if duration < self.remake_threshold_seconds:
            return None
        if any(p.get("gameEndedInEarlySurrender") for p in players):
            return None

        end_ms = info.get("gameEndTimestamp") or (int(info.get("gameStartTimestamp") or 0) + duration * 1000)
        return CompletedMatch(
            match_id=str(metadata.get("matchId") or info.get("gameId")),
            win=bool(players[0].get("win")),
            end_time=datetime.fromtimestamp(end_ms / 1000, tz=timezone.utc),
            duration_seconds=duration,
        )

    async def get_account_by_riot_id(self, game_name: str, tag_line: str) -> dict:
        """Resolve a Riot ID (``name#tag``) to its account payload with ``puuid``."""
        url = (
            f"https://{self.region}.api.riotgames.com"
            f"/riot/account/v1/accounts/by-riot-id/{quote(game_name)}/{quote(tag_line)}"
        )
        return await self._get_json(url)
