"""
Test configuration and fixtures.

Provides:
- In-memory SQLite session factory (fresh database per test)
- A scripted fake of the Chatwoot API served through httpx.MockTransport
- A TicketSync wired to both
"""
import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOGS_DIR"] = os.path.join(tempfile.gettempdir(), "tickets-dashboard-test-logs")
os.environ["DISPLAY_TIMEZONE"] = "America/Sao_Paulo"
os.environ["TOTAL_COUNT_SOURCE"] = "cache"
os.environ["MESSAGES_PAGE_SIZE"] = "20"
os.environ.pop("BETTERSTACK_SOURCE_TOKEN", None)

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

import models
from chatwoot import ChatwootClient
from engine.sync import TicketSync

ACCOUNT_PREFIX = "/api/v1/accounts/1"


class FakeChatwoot:
    """Serves conversations, messages and contacts the way Chatwoot pages them.

    ``gates`` maps a path suffix to an asyncio.Event the request waits on.
    """

    def __init__(self):
        self.conversation_pages = []
        self.all_count = None
        self.conversations = {}
        self.messages = {}
        self.contacts = {}
        self.contact_conversations = {}
        self.failing = set()
        self.overrides = {}
        self.gates = {}
        self.calls = []

    def calls_to(self, suffix: str) -> list:
        return [params for path, params in self.calls if path == ACCOUNT_PREFIX + suffix]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = dict(request.url.params)
        self.calls.append((path, params))
        rest = path[len(ACCOUNT_PREFIX):]
        if rest in self.failing:
            return httpx.Response(500, json={"error": "boom"})
        if rest in self.gates:
            await self.gates[rest].wait()
        if rest in self.overrides:
            return httpx.Response(200, json=self.overrides[rest])

        parts = rest.strip("/").split("/")
        if parts == ["conversations"]:
            page = int(params.get("page", 1))
            items = self.conversation_pages[page - 1] if page <= len(self.conversation_pages) else []
            count = self.all_count
            if count is None:
                count = sum(len(p) for p in self.conversation_pages)
            return httpx.Response(200, json={"data": {"meta": {"all_count": count}, "payload": items}})

        if parts[0] == "conversations" and len(parts) == 2:
            conv = self.conversations.get(int(parts[1]))
            if conv is None:
                return httpx.Response(404, json={"error": "Resource could not be found"})
            return httpx.Response(200, json=conv)

        if parts[0] == "conversations" and len(parts) == 3 and parts[2] == "messages":
            conv_id = int(parts[1])
            if conv_id not in self.messages:
                return httpx.Response(404, json={"error": "Resource could not be found"})
            msgs = sorted(self.messages[conv_id], key=lambda m: m["id"])
            if "before" in params:
                msgs = [m for m in msgs if m["id"] < int(params["before"])]
            return httpx.Response(200, json={"meta": {}, "payload": msgs[-20:]})

        if parts[0] == "contacts" and len(parts) == 2:
            contact = self.contacts.get(int(parts[1]))
            if contact is None:
                return httpx.Response(404, json={"error": "Resource could not be found"})
            return httpx.Response(200, json={"payload": contact})

        if parts[0] == "contacts" and len(parts) == 3 and parts[2] == "conversations":
            return httpx.Response(200, json={"payload": self.contact_conversations.get(int(parts[1]), [])})

        return httpx.Response(404, json={"error": "unknown route"})


@pytest.fixture(scope="function")
def db_factory():
    """Session factory over a private in-memory database."""
    engine = models.create_db_engine("sqlite://")
    models.init_db(engine)
    factory = models.session_scope(sessionmaker(bind=engine))
    yield factory
    engine.dispose()


@pytest.fixture(scope="function")
def fake() -> FakeChatwoot:
    return FakeChatwoot()


@pytest.fixture(scope="function")
def client(fake: FakeChatwoot) -> ChatwootClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))
    return ChatwootClient(
        base_url="https://chatwoot.test",
        account_id="1",
        api_token="test-token",
        http_client=http,
    )


@pytest.fixture(scope="function")
def sync(client: ChatwootClient, db_factory) -> TicketSync:
    return TicketSync(client, db_factory, total_count_source="cache")
