import json
import os
from types import SimpleNamespace

import httpx
import pytest

os.environ.setdefault("API_KEY", "test-api-key")

from config import Settings
from database import create_db_engine, create_session_factory, create_tables
from utils.ai_client import AIClient
from utils.notifier import Notifier

TEST_API_KEY = "test-api-key"
FUNCTIONS_BASE_URL = "http://pipeline.test/functions/v1"
SITE = "https://example.com"


def page_html(title="Example Site - Welcome Page", description="A page about examples.",
              h1="Welcome", words=400, links=("/about", "/contact"), extra=""):
    head = ""
    if title is not None:
        head += f"<title>{title}</title>"
    if description is not None:
        head += f'<meta name="description" content="{description}">'
    body = f"<h1>{h1}</h1>" if h1 else ""
    body += "<p>" + " ".join(["word"] * words) + "</p>"
    body += "".join(f'<a href="{href}">link</a>' for href in links)
    return f"<html><head>{head}</head><body>{body}{extra}</body></html>"


def sitemap_xml(urls):
    entries = "".join(f"<url><loc>{url}</loc></url>" for url in urls)
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'


def sitemap_index_xml(locs):
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'


class FakeSite:
    """MockTransport backend: serves GET routes and records stage trigger POSTs."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []
        self.triggers = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append((request.method, url))
        if request.method == "POST":
            stage = request.url.path.rsplit("/", 1)[-1]
            self.triggers.append((stage, json.loads(request.content), dict(request.headers)))
            return httpx.Response(200, json={"success": True})

        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="Not Found")
        if isinstance(route, Exception):
            raise route
        status, body = route
        return httpx.Response(status, text=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def triggered(self, stage):
        return [payload for name, payload, _ in self.triggers if name == stage]


class FakeCompletions:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    async def create(self, messages, model, temperature):
        self.calls.append({"messages": messages, "model": model, "temperature": temperature})
        content = self.responder(messages, model)
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_ai(responder):
    completions = FakeCompletions(responder)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return AIClient(provider="groq", client=client), completions


def default_responder(messages, model):
    if "JSON" in messages[-1]["content"]:
        return '{"critique": "Title is fine.", "recommendations": ["Add alt text"]}'
    return "<div><h2>Executive Summary</h2></div>"


class RecordingNotifier(Notifier):
    enabled = True

    def __init__(self):
        self.successes = []
        self.failures = []

    async def notify_success(self, stage_name, result):
        self.successes.append((stage_name, result))

    async def notify_failure(self, stage_name, error):
        self.failures.append((stage_name, str(error)))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key=TEST_API_KEY,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        redis_url="redis://localhost:6399/0",
        rate_limit_enabled=False,
        rate_limit_storage_uri="memory://",
        functions_base_url=FUNCTIONS_BASE_URL,
        groq_api_key=None,
        openai_api_key=None,
        smtp_host=None,
        notify_webhook_url=None,
        log_file=str(tmp_path / "app.log"),
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.database_url)
    create_tables(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()
