"""
Sleeper fantasy client.

Sleeper reports trending adds as bare player ids with counts, so the
trending list is joined against the full player directory, which is large
and cached for an hour.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from waiver_wire.models.player import RawAdditionRecord
from waiver_wire.services.fantasy_client import BaseFantasyClient, SourceError, drop_empty


SLEEPER_POSITION_MAPPING: Dict[str, str] = {
    "QB": "QB", "RB": "RB", "WR": "WR", "TE": "TE", "K": "K", "DEF": "DST",
}

TRENDING_TTL = 300.0
DIRECTORY_TTL = 3600.0


@dataclass
class SleeperTrending:
    player_id: str
    count: int


@dataclass
class SleeperPlayer:
    player_id: str
    full_name: str
    team: Optional[str]
    fantasy_positions: List[str] = field(default_factory=list)


def parse_sleeper_trending(row: Dict[str, Any]) -> SleeperTrending:
    return SleeperTrending(player_id=str(row['player_id']), count=int(row['count']))


def parse_sleeper_player(player_id: str, row: Dict[str, Any]) -> SleeperPlayer:
    full_name = row.get('full_name') or f"{row.get('first_name', '')} {row.get('last_name', '')}".strip()
    return SleeperPlayer(
        player_id=player_id,
        full_name=full_name,
        team=row.get('team'),
        fantasy_positions=list(row.get('fantasy_positions') or []),
    )


def sleeper_to_record(
    trending: SleeperTrending,
    player: Optional[SleeperPlayer],
    observed_at: datetime,
) -> Optional[RawAdditionRecord]:
    if player is None or not player.fantasy_positions or not player.full_name:
        return None
    primary = player.fantasy_positions[0]
    return RawAdditionRecord(
        source_id="Sleeper",
        external_player_id=trending.player_id,
        display_name=player.full_name,
        position=SLEEPER_POSITION_MAPPING.get(primary, primary),
        team=player.team or "FA",
        added_count=trending.count,
        observed_at=observed_at,
    )


class SleeperClient(BaseFantasyClient):

    async def fetch_trending(self, kind: str = "add") -> List[SleeperTrending]:
        body = await self._request("GET", f"/players/nfl/trending/{kind}", ttl=TRENDING_TTL)
        if body is None:
            return []
        if not isinstance(body, list):
            raise SourceError("Unexpected Sleeper trending payload", self.name, raw_body=body)
        return self._map_rows(body, parse_sleeper_trending)

    async def fetch_directory(self) -> Dict[str, SleeperPlayer]:
        body = await self._request("GET", "/players/nfl", ttl=DIRECTORY_TTL)
        if not isinstance(body, dict):
            raise SourceError("Unexpected Sleeper player directory payload", self.name)
        directory: Dict[str, SleeperPlayer] = {}
        for player_id, row in body.items():
            if isinstance(row, dict):
                directory[player_id] = parse_sleeper_player(player_id, row)
        return directory

    async def fetch_most_added(self, timeframe: str = "week") -> List[RawAdditionRecord]:
        trending = await self.fetch_trending("add")
        directory = await self.fetch_directory()

        observed_at = self._now()
        records = self._map_rows(
            trending,
            lambda t: sleeper_to_record(t, directory.get(t.player_id), observed_at),
        )
        unmatched = len(trending) - len(records)
        if unmatched:
            self.logger.debug(f"{unmatched} trending Sleeper ids had no usable directory entry")
        records.sort(key=lambda r: r.added_count, reverse=True)
        self.logger.info(f"Sleeper returned {len(records)} added players")
        return records

    async def fetch_player_info(self, player_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request("GET", "/players/nfl", ttl=DIRECTORY_TTL)
        if not isinstance(body, dict):
            return None
        row = body.get(player_id)
        if row is None:
            return None
        return dict(row, player_id=player_id)

    def describe_player(self, info: Dict[str, Any]) -> Dict[str, Any]:
        return drop_empty({
            'injury_status': info.get('injury_status'),
            'status': info.get('status'),
            'team': info.get('team'),
            'depth_chart_order': info.get('depth_chart_order'),
            'years_exp': info.get('years_exp'),
        })
