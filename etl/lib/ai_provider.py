"""
Unified AI Provider
====================

Thin abstraction over Groq and Claude APIs, used to render the weekly
report narrative. Reads AI_PROVIDER env var to choose the default backend.
When a store is passed, every call is recorded in the report_ai_logs table.

Usage:
    from etl.lib.ai_provider import ai_complete
    response = await ai_complete(
        task="weekly_report",
        system_prompt="You write a boardroom-ready weekly report...",
        user_prompt="Data JSON: ...",
    )
    print(response.content)
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Optional

from etl.lib.errors import ConfigError
from etl.lib.logger import setup_logger

logger = setup_logger("ai_provider")

LOG_TABLE = "report_ai_logs"


# ─── Response Model ─────────────────────────────────────────

@dataclass
class AIResponse:
    """Standardised response from any AI provider."""
    content: str
    provider: str          # "groq" | "claude"
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int


# ─── Provider Config ────────────────────────────────────────

GROQ_MODEL = "llama-3.3-70b-versatile"
CLAUDE_MODEL = "claude-sonnet-4-5-20250929"

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.2


def provider_configured(provider: Optional[str] = None) -> bool:
    """True when the chosen backend has an API key in the environment."""
    chosen = (provider or os.getenv("AI_PROVIDER", "groq")).lower()
    key = "ANTHROPIC_API_KEY" if chosen == "claude" else "GROQ_API_KEY"
    return bool(os.getenv(key))


# ─── Core Completion ────────────────────────────────────────

async def ai_complete(
    task: str,
    system_prompt: str,
    user_prompt: str,
    *,
    provider: str | None = None,
    model: str | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    temperature: float = DEFAULT_TEMPERATURE,
    store=None,
) -> AIResponse:
    """
    Run an AI completion and log it.

    Args:
        task: What this call is for (weekly_report).
        system_prompt: System-level instructions.
        user_prompt: The user-facing prompt content.
        provider: Force a specific provider. Defaults to AI_PROVIDER env var.
        model: Force a specific model. Defaults based on provider.
        max_tokens: Max output tokens.
        temperature: Sampling temperature.
        store: Optional TableStore for the audit trail.

    Returns:
        AIResponse with content and token usage.

    Raises:
        ConfigError: if the chosen provider has no API key.
    """
    chosen_provider = (provider or os.getenv("AI_PROVIDER", "groq")).lower()
    chosen_model = model or (CLAUDE_MODEL if chosen_provider == "claude" else GROQ_MODEL)

    start = time.perf_counter()
    try:
        if chosen_provider == "claude":
            response = await _call_claude(
                system_prompt, user_prompt,
                model=chosen_model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        else:
            response = await _call_groq(
                system_prompt, user_prompt,
                model=chosen_model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
    except Exception as e:
        _log_ai_call(
            store, task=task, provider=chosen_provider, model=chosen_model,
            input_tokens=0, output_tokens=0,
            latency_ms=int((time.perf_counter() - start) * 1000),
            success=False, error_message=str(e),
        )
        raise

    _log_ai_call(
        store,
        task=task,
        provider=response.provider,
        model=response.model,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
        latency_ms=response.latency_ms,
        success=True,
    )

    logger.info(
        "AI [%s/%s] task=%s tokens=%d+%d latency=%dms",
        response.provider, response.model, task,
        response.input_tokens, response.output_tokens, response.latency_ms,
    )
    return response


# ─── Groq Backend ───────────────────────────────────────────

async def _call_groq(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
) -> AIResponse:
    """Call Groq API (Llama 3.3 70B)."""
    from groq import AsyncGroq

    api_key = os.getenv("GROQ_API_KEY")
    if not api_key:
        raise ConfigError("GROQ_API_KEY not set", setting="GROQ_API_KEY")

    client = AsyncGroq(api_key=api_key)
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]

    start = time.perf_counter()
    response = await client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
    )
    latency_ms = int((time.perf_counter() - start) * 1000)

    choice = response.choices[0]
    usage = response.usage

    return AIResponse(
        content=choice.message.content or "",
        provider="groq",
        model=model,
        input_tokens=usage.prompt_tokens if usage else 0,
        output_tokens=usage.completion_tokens if usage else 0,
        latency_ms=latency_ms,
    )


# ─── Claude Backend ─────────────────────────────────────────

async def _call_claude(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
) -> AIResponse:
    """Call Anthropic Claude API."""
    import anthropic

    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise ConfigError("ANTHROPIC_API_KEY not set", setting="ANTHROPIC_API_KEY")

    client = anthropic.AsyncAnthropic(api_key=api_key)

    start = time.perf_counter()
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=[{"role": "user", "content": user_prompt}],
    )
    latency_ms = int((time.perf_counter() - start) * 1000)

    content = ""
    for block in response.content:
        if hasattr(block, "text"):
            content += block.text

    return AIResponse(
        content=content,
        provider="claude",
        model=model,
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
        latency_ms=latency_ms,
    )


# ─── Audit Logging ──────────────────────────────────────────

def _log_ai_call(
    store,
    task: str,
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: int,
    success: bool = True,
    error_message: str | None = None,
) -> None:
    """Record an AI call in report_ai_logs; never fails the caller."""
    if store is None:
        return
    row = {
        "task": task,
        "provider": provider,
        "model": model,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "latency_ms": latency_ms,
        "success": success,
    }
    if error_message:
        row["error_message"] = error_message[:1000]
    try:
        store.client.table(LOG_TABLE).insert(row).execute()
    except Exception as e:
        logger.warning("Failed to log AI call: %s", e)
