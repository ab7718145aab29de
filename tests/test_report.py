from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from research_assistant.models.research import ProviderMetadata, ProviderResult, ProviderSource
from research_assistant.services.report.builder import (
    ReportPayload,
    render_report_html,
    report_filename,
    report_url_fetcher,
    slugify,
)
from research_assistant.services.report.storage import SupabaseArtifactStore

CREATED = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


def test_render_includes_both_sections_and_escapes_title():
    html = render_report_html(
        ReportPayload(
            title="Grid <storage> & batteries",
            user_email="reader@example.com",
            created_at=CREATED,
            openai=ProviderResult(
                summary="**Costs** are falling.",
                insights=["Lithium eased", "Sodium-ion pilots"],
                sources=[ProviderSource(title="IEA", url="https://iea.org")],
                meta=ProviderMetadata(model="o3-deep-research", tokens=4200),
            ),
            gemini=ProviderResult(summary="Policy drives adoption."),
        )
    )

    assert "Grid &lt;storage&gt; &amp; batteries" in html
    assert "<strong>Costs</strong>" in html
    assert "<li>Lithium eased</li>" in html
    assert 'href="https://iea.org"' in html
    assert "4,200 tokens" in html
    assert "Policy drives adoption." in html
    assert "March 01, 2025 at 09:30 UTC" in html


def test_missing_results_render_empty_sections():
    html = render_report_html(ReportPayload(title="Topic", user_email=None, created_at=CREATED))

    assert html.count("No results were returned by this provider.") == 2
    assert "Generated for: n/a" in html


def test_raw_html_in_provider_text_is_escaped():
    html = render_report_html(
        ReportPayload(
            title="Topic",
            user_email=None,
            created_at=CREATED,
            openai=ProviderResult(
                summary='**Bold** <link rel="attachment" href="file:///etc/passwd">',
                insights=['<img src="http://169.254.169.254/x">'],
            ),
        )
    )

    assert "<strong>Bold</strong>" in html
    assert "<link rel" not in html
    assert "<img" not in html
    assert "&lt;link rel=" in html
    assert "&lt;img src=" in html


def test_pdf_rendering_refuses_external_resources():
    for url in ("file:///etc/passwd", "http://169.254.169.254/x", "https://example.com/a.png"):
        with pytest.raises(ValueError, match="External resource blocked"):
            report_url_fetcher(url)


def test_filename_slugging():
    assert slugify("Hello, World -- 2025!") == "hello-world-2025"
    assert slugify("Café über Straße – naïve") == "cafe-uber-strae-naive"
    assert report_filename("日本語") == "report.pdf"
    assert report_filename("Heat pumps: cold climates") == "heat-pumps-cold-climates.pdf"
    assert report_filename("!!!") == "report.pdf"


@pytest.mark.asyncio
async def test_store_skips_without_bucket():
    result = await SupabaseArtifactStore(bucket="").persist("s1", b"%PDF", "r.pdf")
    assert result.status == "skipped"
    assert result.path == "buffer://s1/r.pdf"


@pytest.mark.asyncio
async def test_store_uploads_off_the_event_loop():
    fake_bucket = MagicMock()
    fake_client = MagicMock()
    fake_client.storage.from_.return_value = fake_bucket

    async def run_inline(func, *args):
        return func(*args)

    store = SupabaseArtifactStore(bucket="reports", client=fake_client)
    with patch(
        "research_assistant.services.report.storage.asyncio.to_thread", side_effect=run_inline
    ) as to_thread:
        result = await store.persist("s1", b"%PDF", "")

    assert result.status == "uploaded"
    assert result.bucket == "reports"
    assert result.path == "reports/s1/report.pdf"
    fake_client.storage.from_.assert_called_once_with("reports")
    to_thread.assert_called_once()
    path, data, options = fake_bucket.upload.call_args.args
    assert (path, data) == ("reports/s1/report.pdf", b"%PDF")
    assert options["content-type"] == "application/pdf"
