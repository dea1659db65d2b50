"""
Request orchestration.

Turns a predict, complete or nl2cmd request into a provider call, using the
prediction cache for predict and recording token usage on success.

Failure policy:
1. Validation failures raise ValidationError before any I/O
2. Cache failures disable the cache for the call and are logged
3. Provider failures propagate unchanged; nothing is cached or tracked
4. Cache and ledger writes after a successful call never discard the result
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from llmsh.config.loader import ProviderConfig, Settings
from llmsh.llm.client import LLMResult
from llmsh.storage.cache import PredictionCache, open_cache
from llmsh.storage.ledger import UsageLedger
from llmsh.storage.models import Method
from .errors import StorageError, ValidationError
from .filter import filter_sensitive
from .fingerprint import compute_fingerprint
from .prompts import build_complete_prompt, build_nl2cmd_prompt, build_predict_prompt
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    """The LLM collaborator."""

    def call(self, provider: ProviderConfig, prompt: str) -> LLMResult:
        ...


@dataclass(frozen=True)
class CommandRequest:
    """A request from the zsh plugin."""
    method: str
    history: List[str] = field(default_factory=list)
    cwd: str = ""
    git_branch: str = ""
    os_info: str = ""
    prefix: str = ""
    description: str = ""
    timestamp: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CommandRequest":
        """Build a request from decoded JSON.

        Raises:
            ValidationError: If a field has the wrong type
        """
        history = data.get("history") or []
        if not isinstance(history, list) or not all(isinstance(h, str) for h in history):
            raise ValidationError("history must be a list of strings")

        values = {}
        for name in ("method", "cwd", "git_branch", "os_info", "prefix", "description"):
            value = data.get(name) or ""
            if not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")
            values[name] = value

        timestamp = data.get("timestamp")
        if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, int)):
            raise ValidationError("timestamp must be an integer")

        return cls(history=list(history), timestamp=timestamp, **values)


@dataclass(frozen=True)
class CommandResult:
    """The command handed back to the shell."""
    command: str
    cached: bool = False
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"command": self.command}
        if self.confidence is not None:
            data["confidence"] = self.confidence
        data["cached"] = self.cached
        return data


@dataclass(frozen=True)
class CommandResponse:
    """Result plus the token usage that produced it (None on cache hits)."""
    result: CommandResult
    tokens: Optional[TokenUsage] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"result": self.result.to_dict()}
        if self.tokens is not None:
            data["tokens"] = self.tokens.to_dict()
        return data


class CommandOrchestrator:
    """Runs one request against the cache, the provider and the ledger.

    Settings and collaborators are passed in explicitly; nothing is read
    from process-wide state.
    """

    def __init__(
        self,
        settings: Settings,
        client: CompletionClient,
        cache: Optional[PredictionCache] = None,
        ledger: Optional[UsageLedger] = None,
        cache_opener: Callable[[str], PredictionCache] = open_cache,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Loaded configuration
            client: LLM collaborator
            cache: Pre-opened cache; opened lazily from settings when None
            ledger: Usage ledger; built from settings when None
            cache_opener: Factory used for the lazy cache open
        """
        self.settings = settings
        self.client = client
        self._cache = cache
        self._owns_cache = False
        self._cache_opener = cache_opener
        self.ledger = ledger or UsageLedger(settings.tracking.db_path)

    def close(self) -> None:
        """Close the cache if this orchestrator opened it."""
        if self._owns_cache and self._cache is not None:
            self._cache.close()
            self._cache = None
            self._owns_cache = False

    def dispatch(self, request: CommandRequest) -> CommandResponse:
        """Route a request on its method field.

        Raises:
            ValidationError: If the method is unknown or the request invalid
        """
        handlers = {
            Method.PREDICT.value: self.predict,
            Method.COMPLETE.value: self.complete,
            Method.NL2CMD.value: self.generate,
        }
        handler = handlers.get(request.method)
        if handler is None:
            raise ValidationError(f"unknown method: {request.method or '(empty)'}")
        return handler(request)

    def predict(self, request: CommandRequest) -> CommandResponse:
        """Predict the next command, answering from the cache when possible."""
        history = self._prepare_history(request.history)
        fingerprint = compute_fingerprint(history, request.cwd, request.git_branch)

        cache = self._get_cache()
        if cache is not None:
            try:
                entry = cache.get(fingerprint)
            except StorageError as e:
                logger.warning("Cache lookup failed, continuing without cache: %s", e)
                cache = None
            else:
                if entry is not None:
                    logger.debug("Cache hit for %s", fingerprint)
                    return CommandResponse(result=CommandResult(command=entry.command, cached=True))

        prompt = build_predict_prompt(history, request.cwd, request.git_branch, request.os_info)
        llm_result = self._call_provider(prompt)

        if cache is not None and llm_result.command:
            self._store_prediction(cache, fingerprint, llm_result.command)
        self._track(Method.PREDICT, llm_result)
        return self._response(llm_result)

    def complete(self, request: CommandRequest) -> CommandResponse:
        """Complete a partially typed command.

        Raises:
            ValidationError: If the prefix is shorter than min_prefix_length
        """
        if len(request.prefix) < self.settings.prediction.min_prefix_length:
            raise ValidationError("prefix too short")

        history = self._prepare_history(request.history)
        prompt = build_complete_prompt(request.prefix, history, request.cwd, request.os_info)
        llm_result = self._call_provider(prompt)
        self._track(Method.COMPLETE, llm_result)
        return self._response(llm_result)

    def generate(self, request: CommandRequest) -> CommandResponse:
        """Generate a command from a natural-language description.

        Raises:
            ValidationError: If the description is empty
        """
        if not request.description.strip():
            raise ValidationError("description is required")

        history = self._prepare_history(request.history)
        prompt = build_nl2cmd_prompt(request.description, request.cwd, history, request.os_info)
        llm_result = self._call_provider(prompt)
        self._track(Method.NL2CMD, llm_result)
        return self._response(llm_result)

    def _prepare_history(self, history: List[str]) -> List[str]:
        limit = self.settings.prediction.history_length
        if limit > 0:
            history = history[-limit:]
        return filter_sensitive(history)

    def _get_cache(self) -> Optional[PredictionCache]:
        if not self.settings.cache.enabled:
            return None
        if self._cache is None:
            try:
                self._cache = self._cache_opener(self.settings.cache.db_path)
                self._owns_cache = True
            except StorageError as e:
                logger.warning("Cache unavailable: %s", e)
                return None
        return self._cache

    def _call_provider(self, prompt: str) -> LLMResult:
        provider = self.settings.llm.get_provider()
        return self.client.call(provider, prompt)

    def _store_prediction(self, cache: PredictionCache, fingerprint: str, command: str) -> None:
        try:
            cache.set(fingerprint, command)
            evicted = cache.cleanup(self.settings.cache.max_age, self.settings.cache.max_entries)
            if evicted:
                logger.debug("Evicted %d cache entries", evicted)
        except StorageError as e:
            logger.warning("Cache write failed: %s", e)

    def _track(self, method: Method, llm_result: LLMResult) -> None:
        if not self.settings.tracking.enabled:
            return
        usage = llm_result.usage
        try:
            self.ledger.record_usage(
                method=method.value,
                provider=self.settings.llm.default_provider,
                model=llm_result.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_creation_tokens=usage.cache_creation_tokens,
                cache_read_tokens=usage.cache_read_tokens,
            )
        except (StorageError, ValueError) as e:
            logger.warning("Usage tracking failed: %s", e)

    @staticmethod
    def _response(llm_result: LLMResult) -> CommandResponse:
        return CommandResponse(
            result=CommandResult(command=llm_result.command, cached=False),
            tokens=llm_result.usage,
        )
