"""
Routing engine configuration.

Single source of truth: RoutingConfig (pydantic-settings), ROUTING_* variables.
"""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RoutingConfig(BaseSettings):
    """Cache, lock and call-control defaults for the routing engine."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Configuration cache
    cache_enabled: bool = Field(default=True, description="Read-through cache for lookups.")
    extension_cache_ttl_seconds: int = Field(default=1800, ge=1)
    schedule_cache_ttl_seconds: int = Field(default=900, ge=1)
    did_cache_ttl_seconds: int = Field(default=1800, ge=1)

    # Concurrency guard
    ring_group_lock_ttl_seconds: float = Field(default=30.0, gt=0)
    ring_group_lock_wait_seconds: float = Field(default=2.0, ge=0)
    call_lock_ttl_seconds: float = Field(default=10.0, gt=0)
    call_lock_wait_seconds: float = Field(default=2.0, ge=0)
    lock_retry_interval_seconds: float = Field(default=0.1, gt=0)

    # Resolution
    max_routing_depth: int = Field(
        default=2,
        ge=0,
        description="Nested references followed before a configuration error is raised.",
    )

    # Call-control defaults
    default_dial_timeout: int = Field(default=30, ge=1)
    service_dial_timeout: int = Field(default=60, ge=1)
    say_voice: str = "alice"
    say_language: str = "en-US"
    ivr_gather_timeout: int = Field(default=10, ge=1)
    ivr_max_digits: int = Field(default=10, ge=1)
    ivr_turn_ttl_seconds: int = Field(default=3600, ge=1)
    round_robin_cursor_ttl_seconds: int = Field(default=7 * 24 * 3600, ge=1)


@lru_cache(maxsize=1)
def _get_routing_config_cached() -> RoutingConfig:
    return RoutingConfig()


def get_routing_config() -> RoutingConfig:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return RoutingConfig()
    return _get_routing_config_cached()
