import httpx
import pytest

from chatwoot import (
    ChatwootClient,
    ChatwootNotConfigured,
    MalformedPayloadError,
    extract_conversation_id,
)
from engine.paging import collect, cursor_pages
from factories import make_conversation, make_message


def make_client(handler) -> ChatwootClient:
    return ChatwootClient(
        base_url="https://chatwoot.test/",
        account_id="1",
        api_token="test-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# =============================================================================
# Message history (before cursor)
# =============================================================================

@pytest.mark.asyncio
async def test_message_history_follows_before_cursor(fake, client):
    fake.messages[5] = [make_message(i) for i in range(1, 46)]

    messages = await client.fetch_all_messages(5)

    assert sorted(m["id"] for m in messages) == list(range(1, 46))
    assert fake.calls_to("/conversations/5/messages") == [{}, {"before": "26"}, {"before": "6"}]


@pytest.mark.asyncio
async def test_full_page_is_followed_by_one_more_request(fake, client):
    fake.messages[5] = [make_message(i) for i in range(1, 21)]

    messages = await client.fetch_all_messages(5)

    assert len(messages) == 20
    assert len(fake.calls_to("/conversations/5/messages")) == 2


@pytest.mark.asyncio
async def test_failed_page_stops_accumulation():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(dict(request.url.params))
        if "before" in request.url.params:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"payload": [make_message(i) for i in range(21, 41)]})

    client = make_client(handler)
    messages = await client.fetch_all_messages(5)

    assert len(messages) == 20
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_empty_history_is_not_a_failed_fetch(fake, client):
    fake.messages[5] = []

    assert await client.fetch_all_messages(5) == []
    assert await client.fetch_all_messages(6) is None
    assert len(fake.calls_to("/conversations/5/messages")) == 1


@pytest.mark.asyncio
async def test_cursor_that_does_not_move_ends_the_walk():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(dict(request.url.params))
        # upstream ignoring ?before= keeps returning the same page
        return httpx.Response(200, json={"payload": [make_message(i) for i in range(1, 21)]})

    messages = await make_client(handler).fetch_all_messages(5)

    assert len(calls) == 2
    assert len(messages) == 40


@pytest.mark.asyncio
async def test_messages_under_data_key_are_accepted():
    def handler(request):
        return httpx.Response(200, json={"data": {"payload": [make_message(1)]}})

    assert len(await make_client(handler).get_messages_page(5)) == 1


@pytest.mark.asyncio
async def test_non_array_messages_are_malformed():
    def handler(request):
        return httpx.Response(200, json={"payload": {"id": 1}})

    with pytest.raises(MalformedPayloadError):
        await make_client(handler).get_messages_page(5)


# =============================================================================
# Conversation listing (page cursor)
# =============================================================================

@pytest.mark.asyncio
async def test_conversation_pages_stop_on_empty_page(fake, client):
    fake.conversation_pages = [[make_conversation(1), make_conversation(2)], [make_conversation(3)]]

    pages = [page async for page in client.iter_conversation_pages()]

    assert [[c["id"] for c in p] for p in pages] == [[1, 2], [3]]
    assert [p["page"] for p in fake.calls_to("/conversations")] == ["1", "2", "3"]
    first = fake.calls_to("/conversations")[0]
    assert first["status"] == "all"
    assert first["sort"] == "-last_activity_at"


@pytest.mark.asyncio
async def test_listing_sends_access_token_header():
    seen = {}

    def handler(request):
        seen["token"] = request.headers.get("api_access_token")
        return httpx.Response(200, json={"data": {"meta": {"all_count": 0}, "payload": []}})

    await make_client(handler).list_conversations_page(1)

    assert seen["token"] == "test-token"


@pytest.mark.asyncio
async def test_malformed_listing_raises(fake, client):
    fake.overrides["/conversations"] = {"data": {"payload": {"unexpected": True}}}

    with pytest.raises(MalformedPayloadError):
        await client.list_conversations_page(1)


@pytest.mark.asyncio
async def test_total_count_reads_meta(fake, client):
    fake.conversation_pages = [[make_conversation(1)]]
    fake.all_count = 321

    assert await client.get_total_count() == 321


@pytest.mark.asyncio
async def test_contact_conversations_single_call(fake, client):
    fake.contact_conversations[7] = [make_conversation(1), make_conversation(2)]

    convs = await client.list_contact_conversations(7)

    assert [c["id"] for c in convs] == [1, 2]
    assert fake.calls_to("/contacts/7/conversations") == [{}]


# =============================================================================
# Single resources and failures
# =============================================================================

@pytest.mark.asyncio
async def test_conversation_detail_plain_or_wrapped(fake, client):
    fake.conversations[9] = make_conversation(9)
    assert (await client.get_conversation(9))["id"] == 9

    fake.overrides["/conversations/10"] = {"payload": make_conversation(10)}
    assert (await client.get_conversation(10))["id"] == 10

    assert await client.get_conversation(11) is None


@pytest.mark.asyncio
async def test_transport_error_is_logged_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)

    assert await client.get_conversation(1) is None
    assert await client.fetch_all_messages(1) is None


@pytest.mark.asyncio
async def test_contact_lookup_failures_return_none(fake, client):
    fake.contacts[7] = {"id": 7, "name": "Ana", "company": {"name": "ACME"}}
    assert (await client.get_contact(7))["company"]["name"] == "ACME"
    assert await client.get_contact(8) is None
    assert await client.get_contact(None) is None


def test_client_requires_configuration():
    with pytest.raises(ChatwootNotConfigured):
        ChatwootClient(base_url="", account_id="1", api_token="t")


def test_extract_conversation_id():
    assert extract_conversation_id({"event": "conversation_updated", "id": 42}) == 42
    assert extract_conversation_id({"event": "message_created", "id": 900, "conversation": {"id": 42}}) == 42
    assert extract_conversation_id({"event": "message_updated", "conversation_id": 43}) == 43
    assert extract_conversation_id({"event": "contact_updated", "id": 7}) is None


# =============================================================================
# Cursor paging
# =============================================================================

@pytest.mark.asyncio
async def test_cursor_pages_is_restartable():
    script = {1: ["a", "b"], 2: ["c"], 3: []}
    fetched = []

    async def fetch(cursor):
        fetched.append(cursor)
        return script.get(cursor)

    pages = cursor_pages(fetch, 1, lambda cursor, _page: cursor + 1)

    assert await collect(pages()) == ["a", "b", "c"]
    assert await collect(pages()) == ["a", "b", "c"]
    assert fetched == [1, 2, 3, 1, 2, 3]


@pytest.mark.asyncio
async def test_cursor_pages_is_last_yields_final_page():
    async def fetch(cursor):
        return [cursor] * (3 if cursor < 2 else 1)

    pages = cursor_pages(fetch, 0, lambda cursor, _page: cursor + 1, is_last=lambda page: len(page) < 3)

    assert [p async for p in pages()] == [[0, 0, 0], [1, 1, 1], [2]]
