"""TaskPulse — brief polishing through an LLM.

`complete()` hands a brief to the configured provider (groq, openai or
anthropic) and returns the rewrite. Errors propagate; briefs.py then sends
the raw text.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Type alias for provider implementations
_ProviderFn = Callable[[str, str, str, str, int], Awaitable[str]]

_GROQ_BASE_URL = "https://api.groq.com/openai/v1"

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _complete_openai_compatible(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int,
    base_url: str | None = None,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key, base_url=base_url)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content


async def _complete_openai(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    return await _complete_openai_compatible(api_key, model, system, user_message, max_tokens)


async def _complete_groq(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    return await _complete_openai_compatible(
        api_key, model, system, user_message, max_tokens, base_url=_GROQ_BASE_URL,
    )


async def _complete_anthropic(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "groq":      (_complete_groq,      "llama-3.1-8b-instant"),
    "openai":    (_complete_openai,    "gpt-4o-mini"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
}


def _select_provider() -> tuple[_ProviderFn, str, str]:
    """(provider_fn, model, api_key) for the configured LLM_PROVIDER."""
    from taskpulse.config import settings

    name = settings.LLM_PROVIDER.lower()
    if name not in _PROVIDERS:
        raise ValueError(f"Unknown LLM_PROVIDER={name!r}, expected one of {sorted(_PROVIDERS)}")
    if not settings.LLM_API_KEY:
        raise ValueError("LLM_API_KEY is not set but BRIEF_USE_LLM is on")

    fn, default_model = _PROVIDERS[name]
    model = settings.LLM_MODEL or default_model
    logger.info("Brief polishing via %s (%s)", name, model)
    return fn, model, settings.LLM_API_KEY


_selected: tuple[_ProviderFn, str, str] | None = None


async def complete(system: str, user_message: str, max_tokens: int = 256) -> str:
    """Rewrite *user_message* under *system*; errors propagate to the brief builder."""
    global _selected

    if _selected is None:
        _selected = _select_provider()
    fn, model, api_key = _selected
    return await fn(api_key, model, system, user_message, max_tokens)
