"""Render the two provider results into an HTML report and a PDF."""
from __future__ import annotations

import html
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime

import markdown
from jinja2 import Environment, select_autoescape

from research_assistant.models.research import ProviderResult

REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{{ title }}</title>
    <style>
        @page { size: A4; margin: 2cm; }
        body { font-family: Helvetica, Arial, sans-serif; color: #1e293b; line-height: 1.5; }
        h1 { font-size: 20pt; margin-bottom: 0.2em; }
        h2 { font-size: 15pt; border-bottom: 1px solid #e2e8f0; padding-bottom: 0.2em; margin-top: 1.6em; }
        .meta { color: #64748b; font-size: 10pt; }
        .empty { color: #64748b; font-style: italic; }
        .sources li { font-size: 10pt; }
    </style>
</head>
<body>
    <h1>Multi-API Research Assistant Report</h1>
    <p class="meta">
        Title: {{ title }}<br>
        Generated for: {{ user_email or "n/a" }}<br>
        Created at: {{ created_at | format_date }}
    </p>
    {% for section in sections %}
    <section id="{{ section.anchor }}">
        <h2>{{ section.heading }}</h2>
        {% if section.summary_html or section.insights_html %}
        {{ section.summary_html | safe }}
        {% if section.insights_html %}<h3>Key insights</h3>{{ section.insights_html | safe }}{% endif %}
        {% if section.sources %}
        <h3>Sources</h3>
        <ul class="sources">
            {% for source in section.sources %}
            <li>{{ source.title or source.url }}{% if source.url %} &mdash; <a href="{{ source.url }}">{{ source.url }}</a>{% endif %}</li>
            {% endfor %}
        </ul>
        {% endif %}
        {% if section.model %}<p class="meta">Model: {{ section.model }}{% if section.tokens %}, {{ section.tokens | format_number }} tokens{% endif %}</p>{% endif %}
        {% else %}
        <p class="empty">No results were returned by this provider.</p>
        {% endif %}
    </section>
    {% endfor %}
</body>
</html>
"""


@dataclass(slots=True)
class ReportPayload:
    title: str
    user_email: str | None
    created_at: datetime
    openai: ProviderResult | None = None
    gemini: ProviderResult | None = None


def _format_date(value: datetime) -> str:
    return value.strftime("%B %d, %Y at %H:%M UTC")


_env = Environment(autoescape=select_autoescape(default_for_string=True))
_env.filters["format_number"] = lambda x: f"{x:,}"
_env.filters["format_date"] = _format_date


def _escape(text: str) -> str:
    # Provider text is untrusted; raw HTML must not survive markdown rendering.
    return html.escape(text, quote=False)


def _section(anchor: str, heading: str, result: ProviderResult | None) -> dict:
    if result is None:
        return {"anchor": anchor, "heading": heading, "summary_html": "", "insights_html": ""}

    insights_md = "\n".join(f"- {_escape(insight)}" for insight in result.insights)
    return {
        "anchor": anchor,
        "heading": heading,
        "summary_html": markdown.markdown(_escape(result.summary)) if result.summary else "",
        "insights_html": markdown.markdown(insights_md) if insights_md else "",
        "sources": result.sources or [],
        "model": result.meta.model if result.meta else None,
        "tokens": result.meta.tokens if result.meta else None,
    }


def render_report_html(payload: ReportPayload) -> str:
    """Render the report document. Missing provider results become empty sections."""
    template = _env.from_string(REPORT_TEMPLATE)
    return template.render(
        title=payload.title,
        user_email=payload.user_email,
        created_at=payload.created_at,
        sections=[
            _section("openai", "Section A: OpenAI Deep Research", payload.openai),
            _section("gemini", "Section B: Gemini Research", payload.gemini),
        ],
    )


def report_url_fetcher(url: str, *args, **kwargs):
    """Only inline ``data:`` resources may be loaded while rendering a report."""
    if not url.startswith("data:"):
        raise ValueError(f"External resource blocked in report: {url}")
    from weasyprint import default_url_fetcher

    return default_url_fetcher(url, *args, **kwargs)


def build_report_pdf(payload: ReportPayload) -> bytes:
    from weasyprint import HTML

    return HTML(string=render_report_html(payload), url_fetcher=report_url_fetcher).write_pdf()


def slugify(text: str) -> str:
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return text.strip("-")


def report_filename(title: str) -> str:
    slug = slugify(title)[:80].strip("-")
    return f"{slug}.pdf" if slug else "report.pdf"
