"""
This module defines the configuration settings for the OpsDeck runtime.

It uses Pydantic's ``BaseSettings`` so every option can be supplied through
``OPSDECK_``-prefixed environment variables (for example
``OPSDECK_RELAY_ENABLED=true``). Mapping-valued options such as
``OPSDECK_TIMEOUT_RULES`` are read as JSON.
"""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from opsdeck_contracts import AGENT_STATUS_STREAM, EVENTS_STREAM

from .relay import RelayConfig
from .translation import DEFAULT_TIMEOUT_MS, DEFAULT_TIMEOUT_RULES, TimeoutPolicy


class RuntimeSettings(BaseSettings):
    """
    Configuration model for the command-lifecycle runtime.

    Attributes:
        redis_url: Redis instance backing the stream transport.
        default_timeout_ms: Deadline used when no timeout rule matches.
        history_capacity: Maximum retained history entries; None keeps all.
        translation_endpoint: URL of the natural-language collaborator;
            empty disables natural-language submission.
        timeout_rules: Keyword -> timeout (ms) heuristic for deadlines.
        relay_enabled: Whether terminal outcomes are mirrored to the relay.
    """

    model_config = SettingsConfigDict(env_prefix="OPSDECK_", extra="ignore")

    # Transport
    redis_url: str = "redis://localhost:6379/0"
    events_stream: str = EVENTS_STREAM
    status_stream: str = AGENT_STATUS_STREAM
    read_block_ms: int = Field(default=1000, gt=0)
    console_id: str = "console"

    # Lifecycle
    default_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    history_capacity: Optional[int] = Field(default=500, gt=0)
    correlation_prefix: str = "cmd"
    timeout_rules: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIMEOUT_RULES))

    # Translation collaborator
    translation_endpoint: str = ""
    translation_timeout: float = Field(default=30.0, gt=0)

    # Relay channel
    relay_enabled: bool = False
    relay_endpoint: str = ""
    relay_credentials: str = ""
    relay_timeout: float = Field(default=10.0, gt=0)

    def relay_config(self) -> RelayConfig:
        return RelayConfig(
            enabled=self.relay_enabled,
            endpoint=self.relay_endpoint,
            credentials=self.relay_credentials,
            timeout_s=self.relay_timeout,
        )

    def timeout_policy(self) -> TimeoutPolicy:
        return TimeoutPolicy(default_ms=self.default_timeout_ms, rules=dict(self.timeout_rules))
