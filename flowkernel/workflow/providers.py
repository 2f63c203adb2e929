"""LLM provider contract and model tier resolution.

Provider adapters live outside this package; the executor only needs
``complete(prompt, options)`` returning text, optionally with usage data.
"""
from __future__ import annotations

import inspect
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Protocol, Tuple, Union

from flowkernel.errors import ConfigError, FlowError, ProviderError
from flowkernel.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionOptions:
    model: str = ""
    system: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    extra: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_used: int = 0
    cost: float = 0.0
    request_id: Optional[str] = None


class LLMProvider(Protocol):
    """Interface for pluggable completion backends.

    ``complete`` may be a coroutine function or a plain function and may
    return a ``Completion`` or a bare string.
    """

    def complete(
        self, prompt: str, options: CompletionOptions
    ) -> Union[Completion, str, Any]: ...


def _as_completion(value: Any) -> Completion:
    if isinstance(value, Completion):
        return value
    if isinstance(value, str):
        return Completion(text=value)
    text = getattr(value, "text", None)
    if isinstance(text, str):
        return Completion(
            text=text,
            tokens_used=int(getattr(value, "tokens_used", 0) or 0),
            cost=float(getattr(value, "cost", 0.0) or 0.0),
            request_id=getattr(value, "request_id", None),
        )
    raise ProviderError(f"provider returned {type(value).__name__}, expected text")


async def complete(provider: LLMProvider, prompt: str, options: CompletionOptions) -> Completion:
    """Call ``provider`` and normalise its answer; foreign errors become ``ProviderError``."""
    try:
        result = provider.complete(prompt, options)
        if inspect.isawaitable(result):
            result = await result
    except FlowError:
        raise
    except Exception as exc:
        raise ProviderError(
            str(exc) or type(exc).__name__,
            status_code=getattr(exc, "status_code", None),
            request_id=getattr(exc, "request_id", None),
        ) from exc
    return _as_completion(result)


class ProviderRegistry:
    """Named providers plus a tier table (``fast``, ``balanced``, ``strategic``).

    A step's ``model`` is first looked up as a tier, then as a provider name;
    anything else goes to the default provider as a provider-specific model id.
    """

    def __init__(self, default: Optional[LLMProvider] = None) -> None:
        self._providers: Dict[str, LLMProvider] = {}
        self._tiers: Dict[str, Tuple[str, Optional[str]]] = {}
        self._default: Optional[str] = None
        self._lock = threading.RLock()
        if default is not None:
            self.register("default", default)

    def register(self, name: str, provider: LLMProvider, *, default: bool = False) -> None:
        if not name:
            raise ConfigError("provider name cannot be empty")
        with self._lock:
            self._providers[name] = provider
            if default or self._default is None:
                self._default = name
        logger.debug("llm_provider_registered", provider=name, default=self._default == name)

    def set_tier(self, tier: str, provider: str, model: Optional[str] = None) -> None:
        with self._lock:
            if provider not in self._providers:
                raise ConfigError(f"unknown provider for tier {tier}: {provider}")
            self._tiers[tier] = (provider, model)

    def resolve(self, model: str, options: Optional[CompletionOptions] = None) -> Tuple[LLMProvider, CompletionOptions]:
        options = options or CompletionOptions(model=model)
        with self._lock:
            if model in self._tiers:
                name, mapped = self._tiers[model]
                return self._providers[name], replace(options, model=mapped or model)
            if model in self._providers:
                return self._providers[model], options
            if self._default is None:
                raise ConfigError(
                    "no LLM provider configured",
                    suggestion="Register a provider with ProviderRegistry.register().",
                )
            return self._providers[self._default], options
