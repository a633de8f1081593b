import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping

from errors import ConfigurationError

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 15250
ROOM_PORT = 15251

# Option names used by front ends and config files -> attribute names
OPTION_ALIASES = {
    "requiredPlayers": "players_per_match",
    "playersPerMatch": "players_per_match",
    "requireAllPlayersReady": "require_all_ready",
    "matchStartDelaySeconds": "match_start_delay",
    "discoveryWindowSeconds": "discovery_window",
    "advertisedServerName": "server_name",
    "maxParticipants": "max_participants",
    "restartDeadlineOnConnectFailure": "restart_deadline_on_failure",
    "discoveryBroadcastInterval": "broadcast_interval",
    "connectTimeoutSeconds": "connect_timeout",
    "heartbeatInterval": "heartbeat_interval",
    "heartbeatTimeout": "heartbeat_timeout",
    "discoveryPort": "discovery_port",
    "roomPort": "room_port",
}


@dataclass(frozen=True)
class MatchmakingConfig:
    players_per_match: int = 2
    require_all_ready: bool = False
    match_start_delay: float = 3.0
    discovery_window: float = 3.0
    server_name: str = "Museum Match"
    max_participants: int = 8
    restart_deadline_on_failure: bool = False
    broadcast_interval: float = 1.0
    connect_timeout: float = 5.0
    heartbeat_interval: float = 1.0
    heartbeat_timeout: float = 3.0
    discovery_port: int = DISCOVERY_PORT
    room_port: int = ROOM_PORT

    def normalized(self) -> "MatchmakingConfig":
        """Return a copy with out-of-range values clamped"""
        changes: Dict[str, Any] = {}

        max_participants = self.max_participants
        if max_participants < 1:
            logger.warning("max_participants=%s is below 1, using 1", max_participants)
            max_participants = 1
            changes["max_participants"] = max_participants

        players = self.players_per_match
        if players < 1:
            logger.warning("players_per_match=%s is below 1, using 1", players)
            players = 1
        if players > max_participants:
            logger.warning("players_per_match=%s exceeds max_participants=%s, clamping",
                           players, max_participants)
            players = max_participants
        if players != self.players_per_match:
            changes["players_per_match"] = players

        for name in ("match_start_delay", "discovery_window", "connect_timeout"):
            value = getattr(self, name)
            if value < 0:
                logger.warning("%s=%s is negative, using 0", name, value)
                changes[name] = 0.0

        # Zero intervals would spin the scheduler
        for name in ("broadcast_interval", "heartbeat_interval", "heartbeat_timeout"):
            value = getattr(self, name)
            if value <= 0:
                default = getattr(MatchmakingConfig, name)
                logger.warning("%s=%s must be positive, using %s", name, value, default)
                changes[name] = default

        return replace(self, **changes) if changes else self

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "MatchmakingConfig":
        """Build a normalized config from option names or attribute names"""
        types = {f.name: f.type for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, raw in options.items():
            name = OPTION_ALIASES.get(key, key)
            if name not in types:
                raise ConfigurationError(f"Unknown option: {key}")
            values[name] = _coerce(key, raw, types[name])
        return cls(**values).normalized()


def _coerce(key: str, raw: Any, target) -> Any:
    if target in (bool, "bool"):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.lower() in ("1", "true", "yes", "on"):
            return True
        if isinstance(raw, str) and raw.lower() in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Option {key} expects a boolean, got {raw!r}")
    if target in (str, "str"):
        return str(raw)
    converter = int if target in (int, "int") else float
    if isinstance(raw, bool):
        raise ConfigurationError(f"Option {key} expects a number, got {raw!r}")
    try:
        return converter(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Option {key} expects a number, got {raw!r}") from e
