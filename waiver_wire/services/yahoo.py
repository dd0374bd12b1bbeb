"""
Yahoo fantasy client.

Yahoo requires OAuth2. Only the refresh-token grant is supported; a missing
client id, client secret or refresh token is reported as SourceAuthError so
the aggregator does not keep retrying.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from waiver_wire.models.player import RawAdditionRecord
from waiver_wire.services.auth import AuthProvider, OAuthRefreshAuth
from waiver_wire.services.fantasy_client import BaseFantasyClient, drop_empty


YAHOO_TOKEN_URL = "https://api.login.yahoo.com/oauth2/get_token"

YAHOO_POSITION_MAPPING: Dict[str, str] = {
    "QB": "QB", "RB": "RB", "WR": "WR", "TE": "TE", "K": "K", "DEF": "DST",
}


@dataclass
class YahooPlayer:
    player_id: str
    full_name: str
    team_abbr: str
    display_position: str
    percent_owned_delta: float


def parse_yahoo_player(row: Dict[str, Any]) -> YahooPlayer:
    ownership = row.get('ownership') or {}
    return YahooPlayer(
        player_id=str(row['player_id']),
        full_name=str(row['name']['full']),
        team_abbr=str(row.get('editorial_team_abbr') or ''),
        display_position=str(row.get('display_position') or ''),
        percent_owned_delta=float(ownership.get('percent_owned_delta', 0.0)),
    )


def yahoo_to_record(player: YahooPlayer, observed_at: datetime) -> Optional[RawAdditionRecord]:
    if player.percent_owned_delta <= 0:
        return None
    return RawAdditionRecord(
        source_id="Yahoo",
        external_player_id=player.player_id,
        display_name=player.full_name,
        position=YAHOO_POSITION_MAPPING.get(player.display_position, player.display_position),
        team=player.team_abbr or "FA",
        added_count=round(player.percent_owned_delta * 100),
        observed_at=observed_at,
    )


def extract_players(body: Any) -> List[Dict[str, Any]]:
    """Pull fantasy_content.game.players.player out of a Yahoo response."""
    try:
        players = body['fantasy_content']['game']['players']['player']
    except (KeyError, TypeError):
        return []
    if isinstance(players, dict):
        return [players]
    return list(players or [])


class YahooClient(BaseFantasyClient):

    def __init__(self, config, transport, auth: Optional[AuthProvider] = None, game_key: str = "nfl", **kwargs):
        if auth is None:
            auth = OAuthRefreshAuth(config.auth, transport, YAHOO_TOKEN_URL)
        super().__init__(config, transport, auth=auth, **kwargs)
        self.game_key = game_key

    async def fetch_most_added(self, timeframe: str = "week") -> List[RawAdditionRecord]:
        if not self.is_authenticated():
            await self.authenticate()

        endpoint = (
            f"/fantasy/v2/game/{self.game_key}/players;"
            "sort=percent_owned_delta;sort_type=desc;count=50"
        )
        body = await self._request("GET", endpoint, {'format': 'json'})

        observed_at = self._now()
        records = self._map_rows(
            extract_players(body),
            lambda row: yahoo_to_record(parse_yahoo_player(row), observed_at),
        )
        records.sort(key=lambda r: r.added_count, reverse=True)
        self.logger.info(f"Yahoo returned {len(records)} added players")
        return records

    async def fetch_player_info(self, player_id: str) -> Optional[Dict[str, Any]]:
        if not self.is_authenticated():
            await self.authenticate()
        body = await self._request("GET", f"/fantasy/v2/game/{self.game_key}/player/{player_id}", {'format': 'json'})
        try:
            return body['fantasy_content']['game']['player']
        except (KeyError, TypeError):
            return None

    def describe_player(self, info: Dict[str, Any]) -> Dict[str, Any]:
        bye_weeks = info.get('bye_weeks') or {}
        return drop_empty({
            'injury_status': info.get('status'),
            'injury_note': info.get('injury_note'),
            'team': info.get('editorial_team_abbr'),
            'bye_week': bye_weeks.get('week') if isinstance(bye_weeks, dict) else None,
        })
