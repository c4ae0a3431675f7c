"""Integration helpers for interacting with a local Ollama deployment."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from dispatchdesk.core.config import Settings, get_settings

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "llama3"
REQUEST_TIMEOUT = httpx.Timeout(20.0, connect=5.0)


def _sanitize_base_url(raw: str | None) -> str:
    base = (raw or "").strip() or DEFAULT_BASE_URL
    parsed = urlparse(base)
    if parsed.scheme not in {"http", "https"}:
        return DEFAULT_BASE_URL
    if not parsed.netloc:
        return DEFAULT_BASE_URL
    return base.rstrip("/")


def _normalise_text(value: Any | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_summary_prompt(context_text: str, *, max_length: int) -> str:
    """Construct a deterministic prompt around the ticket context."""

    lines = [
        "You are a dispatch assistant that summarises field-service tickets for technicians.",
        f"Summaries must be at most {max_length} characters and keep names, numbers, dates,",
        "locations and equipment models intact.",
        "Answer in the same language as the ticket text.",
        "Respond with a single paragraph without greetings or prefixes.",
        "",
        "Ticket context:",
        context_text.strip(),
    ]
    return "\n".join(lines)


async def request_summary(
    context_text: str,
    *,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Call Ollama to generate a natural-language summary for a ticket."""

    settings = settings or get_settings()
    if not settings.summary_enabled:
        return {
            "provider": "ollama",
            "summary": None,
            "model": None,
            "error": "Summary generation is disabled.",
            "enabled": False,
        }

    base_url = _sanitize_base_url(settings.ollama_base_url)
    target_model = _normalise_text(settings.ollama_model) or DEFAULT_MODEL
    prompt = build_summary_prompt(context_text, max_length=settings.summary_max_length)
    endpoint = urljoin(f"{base_url}/", "api/generate")

    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, follow_redirects=False) as client:
            response = await client.post(
                endpoint,
                json={"model": target_model, "prompt": prompt, "stream": False},
            )
            response.raise_for_status()
            payload = response.json()
    except Exception as exc:  # pragma: no cover - network failure
        LOGGER.warning("Ollama summary request failed: %s", exc)
        return {
            "provider": "ollama",
            "summary": None,
            "model": target_model,
            "error": str(exc),
            "enabled": True,
        }

    summary_text = ""
    if isinstance(payload, dict):
        if isinstance(payload.get("response"), str):
            summary_text = payload["response"].strip()
        elif isinstance(payload.get("message"), dict):
            content = payload["message"].get("content")
            if isinstance(content, str):
                summary_text = content.strip()

    if not summary_text:
        return {
            "provider": "ollama",
            "summary": None,
            "model": target_model,
            "error": "Ollama returned an empty response.",
            "enabled": True,
        }

    return {
        "provider": "ollama",
        "summary": summary_text,
        "model": target_model,
        "error": None,
        "enabled": True,
    }
