"""Chat-completions client used by query expansion, intake follow-ups and plan synthesis.

Production features:
- Schema-constrained output (``response_format: json_schema``)
- Deterministic by default (temperature 0)
- Backoff on rate limits, 5xx and dropped connections, bounded by ``max_retries``
- One log line per completion with model, tokens, latency and retry count
- Tolerates answers wrapped in markdown fences
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx

from visaplan.errors import ConfigurationMissing, InvalidResponse, TransientUpstream, UpstreamError

log = logging.getLogger("visaplan.llm")

_PROVIDER_URLS: dict[str, str] = {
    "grok": "https://api.x.ai/v1",
    "openai_compatible": "https://api.openai.com/v1",
}

_RETRY_CODES = frozenset({429, 500, 502, 503, 504})
_FENCE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?```$", re.DOTALL)


@dataclass
class LLMConfig:
    provider: str  # stub | grok | openai_compatible
    base_url: str | None = None
    api_key: str | None = None
    model: str = "gpt-4o"
    temperature: float = 0.0
    max_retries: int = 3
    timeout: float = 90

    @property
    def endpoint(self) -> str:
        root = self.base_url or _PROVIDER_URLS[self.provider]
        return root.rstrip("/") + "/chat/completions"


@dataclass
class LLMUsage:
    total_tokens: int = 0
    latency_ms: float = 0.0
    retries: int = 0

    def as_meta(self) -> dict[str, int]:
        return {"tokens": self.total_tokens, "latency_ms": round(self.latency_ms), "retries": self.retries}


# ── JSON helpers ──────────────────────────────────────────────
def _extract_json(text: str) -> Any:
    """Parse model output as JSON, unwrapping a ```json fence if present."""
    text = text.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    return json.loads(text)


def _response_format(schema: dict[str, Any] | None, schema_name: str) -> dict[str, Any]:
    if schema is None:
        return {"type": "json_object"}
    return {"type": "json_schema", "json_schema": {"name": schema_name, "schema": schema}}


def _stub_result(prompt: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "_stub": True,
        "prompt_used": prompt[:500],
        "input": payload,
        "note": "Set LLM_PROVIDER and LLM_API_KEY for real outputs.",
    }


def _check_config(cfg: LLMConfig) -> None:
    if cfg.provider not in _PROVIDER_URLS:
        raise ConfigurationMissing(f"Unknown provider: {cfg.provider!r}")
    if not cfg.api_key:
        raise ConfigurationMissing("Missing API key. Set LLM_API_KEY or OPENAI_API_KEY env var.")


def _parse_completion(resp: httpx.Response) -> tuple[dict[str, Any], int]:
    """Return the JSON object the model produced and the reported token total."""
    content = ""
    try:
        data = resp.json()
        content = data["choices"][0]["message"]["content"] or ""
        parsed = _extract_json(content)
    except (KeyError, IndexError, TypeError) as e:
        raise InvalidResponse(f"Unexpected completion shape: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidResponse(f"Model did not return JSON ({e}): {content[:500]}") from e

    if not isinstance(parsed, dict):
        raise InvalidResponse(f"Expected a JSON object from model, got {type(parsed).__name__}")
    tokens = (data.get("usage") or {}).get("total_tokens", 0)
    return parsed, tokens


# ── Main call ─────────────────────────────────────────────────
async def call_llm_json(
    *,
    prompt: str,
    payload: dict[str, Any],
    cfg: LLMConfig,
    schema: dict[str, Any] | None = None,
    schema_name: str = "response",
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Send ``prompt`` as the system instruction and ``payload`` as JSON input.

    Raises ``ConfigurationMissing`` without credentials, ``TransientUpstream``
    once 429/5xx retries are exhausted and ``InvalidResponse`` for output that
    is not a JSON object.
    """
    if cfg.provider == "stub":
        log.info("generation stub: no provider configured")
        return _stub_result(prompt, payload)

    _check_config(cfg)

    body = {
        "model": cfg.model,
        "messages": [
            {"role": "system", "content": prompt},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ],
        "temperature": cfg.temperature,
        "response_format": _response_format(schema, schema_name),
    }

    if client is not None:
        return await _complete(client, body, cfg)
    async with httpx.AsyncClient(timeout=cfg.timeout) as owned:
        return await _complete(owned, body, cfg)


async def _complete(client: httpx.AsyncClient, body: dict[str, Any], cfg: LLMConfig) -> dict[str, Any]:
    usage = LLMUsage()
    headers = {"Authorization": f"Bearer {cfg.api_key}"}
    attempt = 0

    while True:
        attempt += 1
        last_try = attempt >= cfg.max_retries
        started = time.perf_counter()
        try:
            resp = await client.post(cfg.endpoint, headers=headers, json=body)
        except httpx.TransportError as e:
            if last_try:
                raise TransientUpstream(f"generation failed after {attempt} attempts: {e}") from e
            reason = f"transport error {e!r}"
        else:
            usage.latency_ms = (time.perf_counter() - started) * 1000
            if resp.status_code not in _RETRY_CODES:
                break
            if last_try:
                raise TransientUpstream(
                    f"generation {resp.status_code}: {resp.text[:500]}", status_code=resp.status_code
                )
            reason = f"status {resp.status_code}"

        # 2s, 4s, 8s ...
        wait = 2 ** attempt
        usage.retries += 1
        log.warning("generation %s on %s, attempt %d/%d, sleeping %ds", reason, cfg.model, attempt, cfg.max_retries, wait)
        await asyncio.sleep(wait)

    if resp.status_code >= 400:
        raise UpstreamError(f"generation {resp.status_code}: {resp.text[:500]}", status_code=resp.status_code)

    result, usage.total_tokens = _parse_completion(resp)
    log.info(
        "generation ok model=%s tokens=%d latency=%.0fms retries=%d",
        cfg.model, usage.total_tokens, usage.latency_ms, usage.retries,
    )
    result["_usage"] = usage.as_meta()
    return result
