"""Map raw provider payloads onto ``ProviderResult``.

Both normalizers are total: malformed or missing fields degrade to empty
defaults instead of raising.
"""
from __future__ import annotations

import math
import re
from typing import Any

from research_assistant.models.research import ProviderMetadata, ProviderResult, ProviderSource


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def normalize_openai_result(payload: Any) -> ProviderResult:
    data = _as_dict(payload)
    output = _as_dict(data.get("output"))
    summary = _text(output.get("summary")) or ""

    insights: list[str] = []
    for insight in _as_list(output.get("insights")):
        if isinstance(insight, str):
            if insight.strip():
                insights.append(insight.strip())
            continue
        insight = _as_dict(insight)
        title = _text(insight.get("title"))
        if title:
            insights.append(title)
        bullets = insight.get("bullets") or insight.get("content") or []
        for bullet in _as_list(bullets):
            bullet = _text(bullet)
            if bullet:
                insights.append(bullet)

    sources: list[ProviderSource] | None = None
    if isinstance(output.get("sources"), list):
        sources = []
        for source in output["sources"]:
            source = _as_dict(source)
            title = _text(source.get("title")) or ""
            url = source.get("url") if isinstance(source.get("url"), str) else ""
            if title or url:
                sources.append(ProviderSource(title=title, url=url))
        sources = sources or None

    usage = _as_dict(data.get("usage"))
    meta_data = _as_dict(data.get("meta"))
    tokens = _as_int(usage.get("total_tokens"))
    if tokens is None:
        tokens = _as_int(meta_data.get("tokens"))
    model = _text(usage.get("model")) or _text(meta_data.get("model"))
    started_at = _text(usage.get("started_at")) or _text(meta_data.get("startedAt"))
    completed_at = _text(usage.get("completed_at")) or _text(meta_data.get("completedAt"))

    meta = None
    if tokens or model or started_at or completed_at:
        meta = ProviderMetadata(
            tokens=tokens, model=model, started_at=started_at, completed_at=completed_at
        )

    return ProviderResult(raw=payload, summary=summary, insights=insights, sources=sources, meta=meta)


def normalize_gemini_result(payload: Any) -> ProviderResult:
    data = _as_dict(payload)

    chunks: list[str] = []
    for candidate in _as_list(data.get("candidates")):
        content = _as_dict(_as_dict(candidate).get("content"))
        for part in _as_list(content.get("parts")):
            text = _text(_as_dict(part).get("text"))
            if text:
                chunks.append(text)

    combined = "\n".join(chunks).strip()
    lines = [line.strip() for line in re.split(r"\n+", combined)] if combined else []
    summary = lines[0] if lines else ""
    insights = [line for line in lines[1:] if line]

    tokens = _as_int(_as_dict(data.get("usageMetadata")).get("totalTokenCount"))
    model = _text(data.get("modelVersion"))
    meta = ProviderMetadata(tokens=tokens or None, model=model) if (tokens or model) else None

    return ProviderResult(raw=payload, summary=summary, insights=insights, meta=meta)
