"""
Configuration for the waiver wire pipeline.

Defaults live in DEFAULT_CONFIG. A JSON file can override any section and
environment variables (loaded from .env by main) override the file.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or fails validation"""
    pass


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 60
    requests_per_hour: int = 1000


@dataclass(frozen=True)
class SourceAuthConfig:
    """Credentials for one source. Every field is optional."""
    api_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""


@dataclass(frozen=True)
class SourceConfig:
    """Static description of one fantasy data provider."""
    name: str
    base_url: str
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    enabled: bool = True
    auth: SourceAuthConfig = field(default_factory=SourceAuthConfig)


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    ttl_seconds: float = 3600.0
    max_size: int = 100
    response_ttl_seconds: float = 300.0
    response_max_size: int = 1000


@dataclass(frozen=True)
class AggregatorConfig:
    """Retry and quorum policy for multi-source collection."""
    retry_enabled: bool = True
    max_retries: int = 3
    retry_delay: float = 5.0
    exponential_backoff: bool = True
    fallback_to_cache: bool = True
    minimum_successful_sources: int = 1
    timeframe: str = "week"


@dataclass(frozen=True)
class RankingConfig:
    """
    Tuning constants for the composite score.

    The defaults reproduce the long-standing 0.7/0.2/0.1 blend.
    """
    top_n: int = 10
    addition_weight: float = 0.7
    percentage_weight: float = 0.2
    diversity_weight: float = 0.1
    addition_cap: int = 1000
    total_configured_sources: int = 3
    min_league_estimate: int = 1000
    league_multiplier: int = 5


@dataclass(frozen=True)
class StageConfig:
    name: str
    timeout_seconds: float = 300.0
    retry_attempts: int = 3
    retry_delay: float = 5.0
    exponential_backoff: bool = True


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 3
    failure_window_seconds: float = 300.0


@dataclass(frozen=True)
class ScheduleConfig:
    day_of_week: int = 2  # 0 = Sunday
    hour: int = 10
    timezone: str = "America/New_York"


@dataclass(frozen=True)
class PublishConfig:
    output_dir: str = "drafts"
    template_dir: Optional[str] = None
    blog_name: str = "Waiver Wire Forecast"
    default_tags: List[str] = field(default_factory=lambda: ["fantasy-football", "faab", "waiver-wire"])
    dry_run: bool = False


@dataclass(frozen=True)
class SystemConfig:
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    sources: List[SourceConfig] = field(default_factory=list)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    stages: List[StageConfig] = field(default_factory=list)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    history_db_path: str = "data/history.db"
    history_retention_days: int = 30
    log_dir: str = "logs"
    log_level: str = "INFO"
    stop_wait_polls: int = 30

    def stage(self, name: str) -> StageConfig:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return StageConfig(name=name)

    def enabled_sources(self) -> List[SourceConfig]:
        return [s for s in self.sources if s.enabled]


DEFAULT_SOURCES: List[SourceConfig] = [
    SourceConfig(name="ESPN", base_url="https://fantasy.espn.com/apis/v3"),
    SourceConfig(name="Yahoo", base_url="https://fantasysports.yahooapis.com"),
    SourceConfig(
        name="Sleeper",
        base_url="https://api.sleeper.app/v1",
        rate_limit=RateLimitConfig(requests_per_minute=100, requests_per_hour=2000),
    ),
]

DEFAULT_STAGES: List[StageConfig] = [
    StageConfig(name="collect", timeout_seconds=300.0),
    StageConfig(name="research", timeout_seconds=600.0),
    StageConfig(name="analyze", timeout_seconds=300.0),
    StageConfig(name="write", timeout_seconds=300.0),
    StageConfig(name="publish", timeout_seconds=180.0),
]

DEFAULT_CONFIG = SystemConfig(sources=list(DEFAULT_SOURCES), stages=list(DEFAULT_STAGES))


def _build_source(data: Dict[str, Any]) -> SourceConfig:
    rate = data.get('rate_limit') or {}
    auth = data.get('auth') or {}
    return SourceConfig(
        name=data['name'],
        base_url=data['base_url'],
        rate_limit=RateLimitConfig(**rate),
        enabled=bool(data.get('enabled', True)),
        auth=SourceAuthConfig(**auth),
    )


def config_from_dict(data: Dict[str, Any], base: SystemConfig = DEFAULT_CONFIG) -> SystemConfig:
    """Overlay a (possibly partial) dict onto a base configuration."""
    try:
        updates: Dict[str, Any] = {}
        if 'schedule' in data:
            updates['schedule'] = replace(base.schedule, **data['schedule'])
        if 'sources' in data:
            updates['sources'] = [_build_source(s) for s in data['sources']]
        if 'aggregator' in data:
            updates['aggregator'] = replace(base.aggregator, **data['aggregator'])
        if 'cache' in data:
            updates['cache'] = replace(base.cache, **data['cache'])
        if 'ranking' in data:
            updates['ranking'] = replace(base.ranking, **data['ranking'])
        if 'stages' in data:
            updates['stages'] = [StageConfig(**s) for s in data['stages']]
        if 'breaker' in data:
            updates['breaker'] = replace(base.breaker, **data['breaker'])
        if 'publish' in data:
            updates['publish'] = replace(base.publish, **data['publish'])
        for key in ('history_db_path', 'history_retention_days', 'log_dir', 'log_level', 'stop_wait_polls'):
            if key in data:
                updates[key] = data[key]
    except (KeyError, TypeError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return replace(base, **updates)


def load_config(path: Optional[str] = None) -> SystemConfig:
    """Load configuration from an optional JSON file plus environment overrides."""
    config = DEFAULT_CONFIG
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Configuration file {config_path} is not valid JSON: {e}") from e
        config = config_from_dict(data, base=config)
        logger.info(f"Loaded configuration from {config_path}")

    config = apply_env_overrides(config)
    validate_config(config)
    return config


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be an integer, got {raw!r}") from e


def apply_env_overrides(config: SystemConfig) -> SystemConfig:
    """Apply SCHEDULE_*, MIN_SUCCESSFUL_SOURCES, <SOURCE>_* and path overrides."""
    schedule = config.schedule
    day = _env_int('SCHEDULE_DAY_OF_WEEK')
    hour = _env_int('SCHEDULE_HOUR')
    if day is not None:
        schedule = replace(schedule, day_of_week=day)
    if hour is not None:
        schedule = replace(schedule, hour=hour)
    if os.getenv('SCHEDULE_TIMEZONE'):
        schedule = replace(schedule, timezone=os.environ['SCHEDULE_TIMEZONE'])

    aggregator = config.aggregator
    quorum = _env_int('MIN_SUCCESSFUL_SOURCES')
    if quorum is not None:
        aggregator = replace(aggregator, minimum_successful_sources=quorum)

    sources = []
    for source in config.sources:
        prefix = source.name.upper()
        auth = replace(
            source.auth,
            api_key=os.getenv(f'{prefix}_API_KEY', source.auth.api_key),
            client_id=os.getenv(f'{prefix}_CLIENT_ID', source.auth.client_id),
            client_secret=os.getenv(f'{prefix}_CLIENT_SECRET', source.auth.client_secret),
            access_token=os.getenv(f'{prefix}_ACCESS_TOKEN', source.auth.access_token),
            refresh_token=os.getenv(f'{prefix}_REFRESH_TOKEN', source.auth.refresh_token),
        )
        enabled = source.enabled
        flag = os.getenv(f'{prefix}_ENABLED')
        if flag is not None:
            enabled = flag.lower() == 'true'
        sources.append(replace(source, auth=auth, enabled=enabled))

    publish = config.publish
    if os.getenv('DRY_RUN') is not None:
        publish = replace(publish, dry_run=os.environ['DRY_RUN'].lower() == 'true')
    if os.getenv('DRAFT_OUTPUT_DIR'):
        publish = replace(publish, output_dir=os.environ['DRAFT_OUTPUT_DIR'])

    return replace(
        config,
        schedule=schedule,
        aggregator=aggregator,
        sources=sources,
        publish=publish,
        history_db_path=os.getenv('HISTORY_DB_PATH', config.history_db_path),
        log_dir=os.getenv('LOG_DIR', config.log_dir),
        log_level=os.getenv('LOG_LEVEL', config.log_level),
    )


def validate_config(config: SystemConfig) -> None:
    problems: List[str] = []

    if not 0 <= config.schedule.day_of_week <= 6:
        problems.append(f"schedule.day_of_week must be 0-6, got {config.schedule.day_of_week}")
    if not 0 <= config.schedule.hour <= 23:
        problems.append(f"schedule.hour must be 0-23, got {config.schedule.hour}")

    names = [s.name for s in config.sources]
    if len(set(names)) != len(names):
        problems.append(f"duplicate source names: {names}")
    for source in config.sources:
        if not source.base_url.startswith(('http://', 'https://')):
            problems.append(f"source {source.name} has invalid base_url {source.base_url!r}")
        if source.rate_limit.requests_per_minute <= 0 or source.rate_limit.requests_per_hour <= 0:
            problems.append(f"source {source.name} rate limits must be positive")

    enabled = len(config.enabled_sources())
    quorum = config.aggregator.minimum_successful_sources
    if quorum < 1:
        problems.append("aggregator.minimum_successful_sources must be at least 1")
    elif quorum > enabled:
        problems.append(
            f"aggregator.minimum_successful_sources ({quorum}) exceeds enabled sources ({enabled})"
        )
    if config.aggregator.max_retries < 1:
        problems.append("aggregator.max_retries must be at least 1")
    if config.cache.max_size < 1:
        problems.append("cache.max_size must be at least 1")
    if config.ranking.top_n < 1:
        problems.append("ranking.top_n must be at least 1")
    for stage in config.stages:
        if stage.retry_attempts < 1:
            problems.append(f"stage {stage.name} retry_attempts must be at least 1")

    if problems:
        raise ConfigError("; ".join(problems))


def config_to_dict(config: SystemConfig) -> Dict[str, Any]:
    return asdict(config)
