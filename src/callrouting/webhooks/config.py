"""
Webhook security configuration (WEBHOOK_* variables).
"""

from __future__ import annotations

import ipaddress
import os
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class WebhookConfig(BaseSettings):
    """Authentication, replay protection and rate limits for inbound webhooks."""

    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Signature scheme
    hmac_secret: str = Field(default="", description="Process-wide HMAC-SHA256 secret.")
    verify_signature: bool = Field(default=True)
    signature_header: str = Field(default="X-Cloudonix-Signature")
    timestamp_header: str = Field(default="X-Cloudonix-Timestamp")
    verify_timestamp: bool = Field(default=False)
    timestamp_tolerance_seconds: int = Field(default=300, ge=1)
    ip_allowlist: str = Field(
        default="",
        description="Comma-separated addresses or CIDR blocks; empty allows any source.",
    )

    # Idempotency
    idempotency_ttl_seconds: int = Field(default=86400, ge=1)
    idempotency_max_response_bytes: int = Field(default=102400, ge=0)
    idempotency_header: str = Field(default="X-Idempotency-Key")

    # Rate limits (requests per minute)
    rate_limit_voice_per_minute: int = Field(default=1000, ge=1)
    rate_limit_webhooks_per_minute: int = Field(default=100, ge=1)
    rate_limit_ip_per_minute: int = Field(default=600, ge=1)
    rate_limit_warning_ratio: float = Field(default=0.8, gt=0, le=1)

    @field_validator("ip_allowlist")
    @classmethod
    def validate_allowlist(cls, v: str) -> str:
        for entry in cls._split(v):
            ipaddress.ip_network(entry, strict=False)
        return v

    @staticmethod
    def _split(value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def ip_networks(self) -> list[IpNetwork]:
        return [ipaddress.ip_network(entry, strict=False) for entry in self._split(self.ip_allowlist)]


@lru_cache(maxsize=1)
def _get_webhook_config_cached() -> WebhookConfig:
    return WebhookConfig()


def get_webhook_config() -> WebhookConfig:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return WebhookConfig()
    return _get_webhook_config_cached()
