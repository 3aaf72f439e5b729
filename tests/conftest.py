import asyncio
import os

# Tests never export spans
os.environ.setdefault("DISABLE_TELEMETRY", "true")

from collections import defaultdict

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from models import DatabaseQueue


@pytest.fixture(autouse=True)
def fast_http(monkeypatch):
    """No retries or backoff sleeps unless a test asks for them."""
    monkeypatch.setattr(config, "MAX_RETRIES", 0)
    monkeypatch.setattr(config, "RETRY_DELAY_BASE", 0.0)
    monkeypatch.setattr(config, "HTTP_TIMEOUT", 5)


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "rssy-test.db"))
    await queue.start()
    yield queue
    await queue.stop()


class FeedServer:
    """Local HTTP server serving canned feed documents by path."""

    def __init__(self):
        self.documents = {}
        self.delays = {}
        self.hits = defaultdict(int)
        self.server = None

    def serve(self, path, body, status=200, content_type="application/rss+xml", delay=0):
        self.documents[path] = (status, body, content_type)
        self.delays[path] = delay
        return self.url(path)

    def url(self, path):
        return str(self.server.make_url(path))

    async def _handle(self, request):
        self.hits[request.path] += 1
        if request.path not in self.documents:
            return web.Response(status=404, text="not found")
        if self.delays.get(request.path):
            await asyncio.sleep(self.delays[request.path])
        status, body, content_type = self.documents[request.path]
        return web.Response(status=status, body=body.encode("utf-8"), content_type=content_type)

    async def start(self):
        app = web.Application()
        app.router.add_get("/{tail:.*}", self._handle)
        self.server = TestServer(app)
        await self.server.start_server()

    async def close(self):
        await self.server.close()


@pytest_asyncio.fixture
async def feed_server():
    server = FeedServer()
    await server.start()
    yield server
    await server.close()


def _rss_item(item):
    parts = [f"<guid isPermaLink=\"false\">{item['guid']}</guid>"] if item.get("guid") else []
    if item.get("title"):
        parts.append(f"<title>{item['title']}</title>")
    if item.get("link"):
        parts.append(f"<link>{item['link']}</link>")
    if item.get("description"):
        parts.append(f"<description>{item['description']}</description>")
    if item.get("pub_date"):
        parts.append(f"<pubDate>{item['pub_date']}</pubDate>")
    return "<item>" + "".join(parts) + "</item>"


@pytest.fixture
def make_rss():
    """Build an RSS 2.0 document from a list of item dicts (guid, title, link, description, pub_date)."""

    def build(items, title="Test Feed"):
        body = "".join(_rss_item(item) for item in items)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<rss version="2.0"><channel>'
            f"<title>{title}</title><link>https://example.com/</link>"
            "<description>Test feed</description>"
            f"{body}</channel></rss>"
        )

    return build
