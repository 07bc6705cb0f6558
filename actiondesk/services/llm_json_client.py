from __future__ import annotations

from dataclasses import dataclass
import json
import logging

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LLMJsonResponse:
    data: dict[str, object] | None
    error: str | None


def call_json_chat_completion(
    *,
    provider: str,
    model: str,
    api_key: str | None,
    timeout_seconds: int,
    messages: list[dict[str, str]],
    max_tokens: int = 400,
    temperature: float = 0.0,
    api_base_url: str | None = None,
) -> LLMJsonResponse:
    if not model:
        return LLMJsonResponse(data=None, error="missing_model")
    if not api_key:
        return LLMJsonResponse(data=None, error="missing_api_key")
    endpoint = resolve_chat_endpoint((provider or "").strip().lower(), api_base_url)
    if endpoint is None:
        return LLMJsonResponse(data=None, error="unsupported_provider")

    try:
        response = requests.post(
            endpoint,
            json={
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
                "messages": messages,
            },
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=max(1, timeout_seconds),
        )
    except requests.Timeout:
        return LLMJsonResponse(data=None, error="timeout")
    except requests.RequestException as exc:
        logger.warning("LLM request to %s failed: %s", endpoint, type(exc).__name__)
        return LLMJsonResponse(data=None, error="network_error")

    if not response.ok:
        logger.warning("LLM request to %s returned HTTP %s", endpoint, response.status_code)
        return LLMJsonResponse(data=None, error="http_error")

    try:
        payload = response.json()
    except ValueError:
        return LLMJsonResponse(data=None, error="invalid_provider_payload")

    content = _read_message_content(payload)
    if content is None:
        return LLMJsonResponse(data=None, error="invalid_provider_payload")
    parsed = extract_json_object(content)
    if parsed is None:
        return LLMJsonResponse(data=None, error="invalid_json")
    return LLMJsonResponse(data=parsed, error=None)


def resolve_chat_endpoint(provider: str, api_base_url: str | None) -> str | None:
    if provider == "groq":
        return "https://api.groq.com/openai/v1/chat/completions"
    if provider in {"openai", "openai_compatible"}:
        base = (api_base_url or "https://api.openai.com/v1").strip()
        if not base:
            return None
        return f"{base.rstrip('/')}/chat/completions"
    return None


def _read_message_content(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, list):
        chunks = [
            str(part.get("text", "")).strip()
            for part in content
            if isinstance(part, dict) and str(part.get("text", "")).strip()
        ]
        return "\n".join(chunks)
    if isinstance(content, str):
        return content
    return None


def extract_json_object(content: str) -> dict[str, object] | None:
    raw = (content or "").strip()
    if not raw:
        return None
    if raw.startswith("```"):
        lines = raw.splitlines()
        if len(lines) >= 3:
            raw = "\n".join(lines[1:-1]).strip()
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            value = json.loads(raw[start : end + 1])
        except json.JSONDecodeError:
            return None
    if not isinstance(value, dict):
        return None
    return value
