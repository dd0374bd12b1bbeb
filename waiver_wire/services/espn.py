"""
ESPN fantasy client.

ESPN's public player endpoint exposes ownership change as a percentage. The
client converts the weekly change into an approximate addition count.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from waiver_wire.models.player import RawAdditionRecord
from waiver_wire.services.fantasy_client import BaseFantasyClient, SourceError, drop_empty


ESPN_POSITION_IDS: Dict[int, str] = {1: "QB", 2: "RB", 3: "WR", 4: "TE", 5: "K", 16: "DST"}

ESPN_TEAM_IDS: Dict[int, str] = {
    1: "ATL", 2: "BUF", 3: "CHI", 4: "CIN", 5: "CLE", 6: "DAL", 7: "DEN", 8: "DET",
    9: "GB", 10: "TEN", 11: "IND", 12: "KC", 13: "LV", 14: "LAR", 15: "MIA", 16: "MIN",
    17: "NE", 18: "NO", 19: "NYG", 20: "NYJ", 21: "PHI", 22: "ARI", 23: "PIT", 24: "LAC",
    25: "SF", 26: "SEA", 27: "TB", 28: "WAS", 29: "CAR", 30: "JAX", 33: "BAL", 34: "HOU",
}


@dataclass
class ESPNPlayer:
    """Fields used from one entry of ESPN's `players` array"""
    player_id: int
    full_name: str
    default_position_id: int
    pro_team_id: int
    percent_change: float


def parse_espn_player(row: Dict[str, Any]) -> ESPNPlayer:
    ownership = row.get('ownership') or {}
    return ESPNPlayer(
        player_id=int(row['id']),
        full_name=str(row['fullName']),
        default_position_id=int(row.get('defaultPositionId', 0)),
        pro_team_id=int(row.get('proTeamId', 0)),
        percent_change=float(ownership.get('percentChange', 0.0)),
    )


def espn_to_record(player: ESPNPlayer, observed_at: datetime) -> Optional[RawAdditionRecord]:
    """Players whose ownership did not rise are not additions."""
    if player.percent_change <= 0:
        return None
    return RawAdditionRecord(
        source_id="ESPN",
        external_player_id=str(player.player_id),
        display_name=player.full_name,
        position=ESPN_POSITION_IDS.get(player.default_position_id, "UNKNOWN"),
        team=ESPN_TEAM_IDS.get(player.pro_team_id, "FA"),
        added_count=round(player.percent_change * 100),
        observed_at=observed_at,
    )


def current_nfl_week(now: datetime) -> int:
    """Approximate week number counting from September 1st, clamped to 1-18."""
    season_start = datetime(now.year, 9, 1)
    elapsed_days = (now - season_start).total_seconds() / 86400
    weeks = -(-elapsed_days // 7)
    return int(max(1, min(18, weeks)))


class ESPNClient(BaseFantasyClient):

    def _players_endpoint(self) -> str:
        season = self._now().year
        return f"/games/ffl/seasons/{season}/segments/0/leagues/0/players"

    async def fetch_most_added(self, timeframe: str = "week") -> List[RawAdditionRecord]:
        params = {
            'view': ['kona_player_info', 'kona_ownership'],
            'scoringPeriodId': current_nfl_week(self._now()),
            'sortPercOwned': 'desc',
            'sortPercOwnedDelta': 'desc',
            'limit': 50,
        }
        body = await self._request("GET", self._players_endpoint(), params)
        if not isinstance(body, dict) or not isinstance(body.get('players'), list):
            raise SourceError("No players data in ESPN response", self.name, raw_body=body)

        observed_at = self._now()
        records = self._map_rows(
            body['players'],
            lambda row: espn_to_record(parse_espn_player(row), observed_at),
        )
        records.sort(key=lambda r: r.added_count, reverse=True)
        self.logger.info(f"ESPN returned {len(records)} added players")
        return records

    async def fetch_player_info(self, player_id: str) -> Optional[Dict[str, Any]]:
        params = {'view': ['kona_player_info'], 'playerId': int(player_id)}
        body = await self._request("GET", self._players_endpoint(), params)
        players = body.get('players') if isinstance(body, dict) else None
        if not players:
            return None
        return players[0]

    def describe_player(self, info: Dict[str, Any]) -> Dict[str, Any]:
        return drop_empty({
            'injury_status': info.get('injuryStatus'),
            'injured': info.get('injured'),
            'team': ESPN_TEAM_IDS.get(int(info.get('proTeamId') or 0)),
        })
