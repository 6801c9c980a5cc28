"""
This module turns operator input into a dispatchable command.

Two translators share one contract, ``translate(raw_input, agent) ->
TranslationResult``:

- ``PassthroughTranslator`` handles raw shell text: the command is sent as
  typed and only the shell family and timeout are inferred.
- ``HttpTranslationAdapter`` forwards natural language to an external AI
  collaborator over HTTP and validates its structured answer.

Both raise ``TranslationError`` for anything they cannot turn into a
command. Neither touches the registry or the history; recording a failed
attempt is the engine's job.

Timeouts are suggested by a ``TimeoutPolicy``: keyword rules matched against
the input and the resolved command (long-running verbs such as ``download``
or ``install`` get a longer deadline). The thresholds are configuration, not
contract.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from opsdeck_contracts import Agent, TranslationRequest, TranslationResult

from .errors import TranslationError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_TIMEOUT_RULES: Dict[str, int] = {
    "download": 300_000,
    "install": 300_000,
    "upgrade": 300_000,
    "update": 180_000,
    "backup": 180_000,
    "scan": 120_000,
    "systeminfo": 60_000,
    "system info": 60_000,
    "process": 60_000,
}


@dataclass(slots=True)
class TimeoutPolicy:
    """
    Keyword-based deadline heuristic.

    Attributes:
        default_ms: Timeout used when no rule matches.
        rules: Lower-cased substring -> timeout in milliseconds. When several
            rules match, the longest timeout wins.
    """

    default_ms: int = DEFAULT_TIMEOUT_MS
    rules: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIMEOUT_RULES))

    def timeout_for(self, *texts: str) -> int:
        haystack = " ".join(text.lower() for text in texts if text)
        matches = [timeout for keyword, timeout in self.rules.items() if keyword.lower() in haystack]
        return max(matches) if matches else self.default_ms


def shell_family(platform: str) -> str:
    """Guesses the command type for raw input from the agent platform."""
    normalized = (platform or "").strip().lower()
    if normalized.startswith("win"):
        return "cmd"
    if normalized in {"linux", "darwin", "macos", "freebsd"} or normalized.startswith("linux"):
        return "bash"
    return "shell"


def _require_input(raw_input: str, agent: Agent, *, platform: bool = True) -> str:
    text = (raw_input or "").strip()
    if not text:
        raise TranslationError("Input is empty")
    if platform and not (agent.platform or "").strip():
        raise TranslationError(f"Agent {agent.agent_id} has no platform hint")
    return text


class Translator(Protocol):
    async def translate(self, raw_input: str, agent: Agent) -> TranslationResult:
        ...


class PassthroughTranslator:
    """Resolves raw shell input to itself."""

    def __init__(self, policy: Optional[TimeoutPolicy] = None) -> None:
        self._policy = policy or TimeoutPolicy()

    async def translate(self, raw_input: str, agent: Agent) -> TranslationResult:
        text = _require_input(raw_input, agent, platform=False)
        return TranslationResult(
            resolved_command=text,
            command_type=shell_family(agent.platform),
            suggested_timeout_ms=self._policy.timeout_for(text),
        )


class _CollaboratorAnswer(BaseModel):
    """Lenient view of the collaborator's response body."""

    model_config = ConfigDict(extra="ignore")

    resolved_command: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("resolvedCommand", "resolved_command", "command"),
    )
    command_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("commandType", "command_type", "type"),
    )
    suggested_timeout_ms: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("suggestedTimeoutMs", "suggested_timeout_ms"),
    )
    explanation: str = ""


class HttpTranslationAdapter:
    """
    Client for the natural-language translation collaborator.

    The collaborator is a black box reached with a single POST carrying a
    ``TranslationRequest``. It may answer with the result directly or wrapped
    as ``{"success": bool, "data": {...}, "error": str}``.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 30.0,
        policy: Optional[TimeoutPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("translation endpoint is required")
        self._endpoint = endpoint
        self._timeout = timeout if timeout > 0 else 30.0
        self._policy = policy or TimeoutPolicy()
        self._client = client
        self._owns_client = client is None

    async def translate(self, raw_input: str, agent: Agent) -> TranslationResult:
        text = _require_input(raw_input, agent)
        request = TranslationRequest(
            raw_input=text,
            agent_platform=agent.platform,
            agent_system_info=agent.system_info,
        )
        body = await self._post(request)
        answer = self._parse(body)
        timeout_ms = answer.suggested_timeout_ms or self._policy.timeout_for(
            text, answer.resolved_command
        )
        result = TranslationResult(
            resolved_command=answer.resolved_command,
            command_type=answer.command_type or "shell",
            suggested_timeout_ms=timeout_ms,
            explanation=answer.explanation,
        )
        LOGGER.info(
            "Translated input for agent %s (type=%s, timeout_ms=%d)",
            agent.agent_id,
            result.command_type,
            result.suggested_timeout_ms,
        )
        return result

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, request: TranslationRequest) -> Any:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._client.post(
                self._endpoint, json=request.model_dump(by_alias=True)
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Translation request to %s failed: %s", self._endpoint, exc)
            raise TranslationError(f"Translation service unavailable: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise TranslationError("Translation service returned invalid JSON") from exc

    @staticmethod
    def _parse(body: Any) -> _CollaboratorAnswer:
        if not isinstance(body, dict):
            raise TranslationError("Translation service returned an unexpected payload")
        if body.get("success") is False:
            raise TranslationError(str(body.get("error") or "Translation failed"))
        data = body.get("data", body)
        try:
            return _CollaboratorAnswer.model_validate(data)
        except ValidationError as exc:
            raise TranslationError(f"Translation result is incomplete: {exc.error_count()} error(s)") from exc
