"""Tunable settings for a consensus node and their validation."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from typing import Optional, TextIO

_MILLISECOND = 0.001


class ConfigError(ValueError):
    """Raised when a configuration is not sane."""


@dataclass
class Config:
    """Node configuration. Durations are in seconds."""

    heartbeat_timeout: float = 1000 * _MILLISECOND
    election_timeout: float = 1000 * _MILLISECOND
    commit_timeout: float = 50 * _MILLISECOND
    max_append_entries: int = 64
    shutdown_on_remove: bool = True
    disable_bootstrap_after_elect: bool = True
    trailing_logs: int = 10240
    snapshot_interval: float = 120.0
    snapshot_threshold: int = 8192
    enable_single_node: bool = False
    leader_lease_timeout: float = 500 * _MILLISECOND
    start_as_leader: bool = False
    notify_ch: Optional["queue.Queue[bool]"] = None
    log_output: Optional[TextIO] = None
    logger: Optional[logging.Logger] = None


def default_config() -> Config:
    """Return a configuration with usable defaults."""
    return Config()


def validate_config(config: Config) -> Config:
    """Check that ``config`` is sane; return it or raise ConfigError."""
    if config.heartbeat_timeout < 5 * _MILLISECOND:
        raise ConfigError("Heartbeat timeout is too low")
    if config.election_timeout < 5 * _MILLISECOND:
        raise ConfigError("Election timeout is too low")
    if config.commit_timeout < _MILLISECOND:
        raise ConfigError("Commit timeout is too low")
    if config.max_append_entries <= 0:
        raise ConfigError("MaxAppendEntries must be positive")
    if config.max_append_entries > 1024:
        raise ConfigError("MaxAppendEntries is too large")
    if config.snapshot_interval < 5 * _MILLISECOND:
        raise ConfigError("Snapshot interval is too low")
    if config.leader_lease_timeout < 5 * _MILLISECOND:
        raise ConfigError("Leader lease timeout is too low")
    if config.leader_lease_timeout > config.heartbeat_timeout:
        raise ConfigError(
            "Leader lease timeout cannot be larger than heartbeat timeout"
        )
    if config.election_timeout < config.heartbeat_timeout:
        raise ConfigError(
            "Election timeout must be equal or greater than Heartbeat Timeout"
        )
    return config


__all__ = ["Config", "ConfigError", "default_config", "validate_config"]