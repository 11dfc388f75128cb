from unittest.mock import AsyncMock, MagicMock

import pytest

from paddock import PaddockConfig


def _fake_page(html_by_url, redirects=None):
    """A Playwright-like page serving canned HTML; unknown URLs fail navigation."""
    redirects = redirects or {}
    page = MagicMock()
    page.url = ""

    async def goto(url, **kwargs):
        target = redirects.get(url, url)
        if target not in html_by_url:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        page.url = target

    async def content():
        html = html_by_url[page.url]
        # a list means successive visits return successive snapshots
        if isinstance(html, list):
            return html.pop(0) if len(html) > 1 else html[0]
        return html

    page.goto = AsyncMock(side_effect=goto)
    page.content = AsyncMock(side_effect=content)
    page.route = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.query_selector = AsyncMock(return_value=None)
    page.close = AsyncMock()
    return page


@pytest.fixture
def fake_context():
    """Builds a context whose pages serve ``html_by_url``; every page it opened is in ``.pages``."""
    def build(html_by_url, redirects=None):
        context = MagicMock()
        context.pages = []

        def new_page():
            page = _fake_page(html_by_url, redirects)
            context.pages.append(page)
            return page

        context.new_page = AsyncMock(side_effect=new_page)
        return context

    return build


@pytest.fixture
def fast_config(tmp_path):
    return PaddockConfig(
        base_delay_s=0,
        jitter_s=0,
        retry_delay_s=0,
        results_settle_ms=0,
        docs_dir=tmp_path / "docs",
        api_key="test-key",
    )
