"""Async client for the Chatwoot application API."""
from typing import Any, AsyncIterator, Optional

import httpx

import settings
from engine.paging import collect, cursor_pages
from logging_conf import logger

HDRS_BASE = {"Accept": "application/json", "User-Agent": "tickets-dashboard/1.0"}

CONVERSATION_EVENTS = ("conversation_created", "conversation_updated", "conversation_status_changed")
MESSAGE_EVENTS = ("message_created", "message_updated")
CONTACT_EVENTS = ("contact_created", "contact_updated")


class ChatwootError(Exception):
    pass


class ChatwootNotConfigured(ChatwootError):
    pass


class MalformedPayloadError(ChatwootError):
    """Upstream answered 2xx but the body is not the shape we expect."""


def extract_conversation_id(event: dict):
    kind = event.get("event")
    if kind in MESSAGE_EVENTS:
        conv = event.get("conversation")
        if isinstance(conv, dict) and conv.get("id"):
            return conv["id"]
        return event.get("conversation_id")
    if kind in CONVERSATION_EVENTS:
        return event.get("id")
    return None


def _oldest_id(page: list):
    ids = [m["id"] for m in page if isinstance(m, dict) and m.get("id") is not None]
    return min(ids) if ids else None


class ChatwootClient:
    """Reads conversations, messages and contacts for one Chatwoot account.

    Every call is a single GET. Non-2xx answers and transport errors are
    logged and surface as None so pagination loops stop where they are;
    nothing is retried.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        account_id: Optional[str] = None,
        api_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        messages_page_size: Optional[int] = None,
    ):
        self.base_url = (settings.CHATWOOT_URL if base_url is None else base_url).rstrip("/")
        self.account_id = str(settings.CHATWOOT_ACCOUNT_ID if account_id is None else account_id)
        self.api_token = settings.CHATWOOT_API_TOKEN if api_token is None else api_token
        if not (self.base_url and self.account_id and self.api_token):
            raise ChatwootNotConfigured("CHATWOOT_URL, CHATWOOT_ACCOUNT_ID and CHATWOOT_API_TOKEN are required")
        self.messages_page_size = messages_page_size or settings.MESSAGES_PAGE_SIZE
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=settings.CHATWOOT_TIMEOUT)

    @property
    def account_url(self) -> str:
        return f"{self.base_url}/api/v1/accounts/{self.account_id}"

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    async def _get(self, path: str, params: Optional[dict] = None) -> Optional[Any]:
        hdrs = {**HDRS_BASE, "api_access_token": self.api_token}
        try:
            r = await self.http.get(f"{self.account_url}{path}", params=params, headers=hdrs)
        except httpx.HTTPError as e:
            logger.error(f"Chatwoot request {path} failed: {e}")
            return None
        if r.status_code >= 300:
            logger.warning(f"Chatwoot request {path} params={params} returned {r.status_code}")
            return None
        try:
            return r.json()
        except ValueError as e:
            raise MalformedPayloadError(f"Non-JSON body from {path}") from e

    # --- conversations ---

    async def get_conversation(self, conv_id) -> Optional[dict]:
        data = await self._get(f"/conversations/{conv_id}")
        if data is None:
            return None
        # Some Chatwoot versions wrap the conversation in "payload"
        conv = data.get("payload") if isinstance(data, dict) and isinstance(data.get("payload"), dict) else data
        if not isinstance(conv, dict):
            raise MalformedPayloadError(f"Conversation {conv_id} is not an object")
        return conv

    async def list_conversations_page(self, page: int, per_page: Optional[int] = None) -> Optional[tuple[list, Optional[int]]]:
        """One listing page as ``(conversations, meta.all_count)``, None if the call failed."""
        params = {
            "status": "all",
            "sort": "-last_activity_at",
            "page": page,
            "per_page": per_page or settings.CONVERSATIONS_PER_PAGE,
        }
        data = await self._get("/conversations", params=params)
        if data is None:
            return None
        body = data.get("data") if isinstance(data, dict) else None
        items = body.get("payload") if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise MalformedPayloadError(f"Conversation listing page {page} has no payload array")
        all_count = (body.get("meta") or {}).get("all_count")
        return items, all_count

    def iter_conversation_pages(self, per_page: Optional[int] = None) -> AsyncIterator[list]:
        async def fetch(page):
            result = await self.list_conversations_page(page, per_page)
            return result[0] if result else None

        return cursor_pages(fetch, 1, lambda page, _items: page + 1)()

    async def list_contact_conversations(self, contact_id) -> Optional[list]:
        data = await self._get(f"/contacts/{contact_id}/conversations")
        if data is None:
            return None
        items = data.get("payload") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise MalformedPayloadError(f"Conversations of contact {contact_id} are not an array")
        return items

    async def get_total_count(self) -> Optional[int]:
        result = await self.list_conversations_page(1)
        if result is None or result[1] is None:
            return None
        return int(result[1])

    # --- messages ---

    async def get_messages_page(self, conv_id, before=None) -> Optional[list]:
        params = {"before": before} if before is not None else None
        data = await self._get(f"/conversations/{conv_id}/messages", params=params)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Messages of conversation {conv_id} are not an object")
        messages = data.get("payload")
        if messages is None:
            messages = (data.get("data") or {}).get("payload", [])
        if not isinstance(messages, list):
            raise MalformedPayloadError(f"Messages of conversation {conv_id} are not an array")
        return messages

    def _message_pages(self, fetch):
        def next_before(before, page):
            oldest = _oldest_id(page)
            # Upstream ignored the cursor; stop rather than spin
            if oldest is None or (before is not None and oldest >= before):
                return None
            return oldest

        return cursor_pages(
            fetch,
            None,
            next_before,
            is_last=lambda page: len(page) < self.messages_page_size,
        )

    def iter_message_pages(self, conv_id) -> AsyncIterator[list]:
        """Walk a conversation's history backwards with the ``before`` cursor."""

        async def fetch(before):
            return await self.get_messages_page(conv_id, before)

        return self._message_pages(fetch)()

    async def fetch_all_messages(self, conv_id) -> Optional[list]:
        """Whole message history of a conversation.

        None when the first page could not be fetched, ``[]`` when the
        conversation has no messages. A later page failing keeps what was
        gathered before it.
        """
        first_page_failed = False

        async def fetch(before):
            nonlocal first_page_failed
            page = await self.get_messages_page(conv_id, before)
            if page is None and before is None:
                first_page_failed = True
            return page

        messages = await collect(self._message_pages(fetch)())
        return None if first_page_failed else messages

    # --- contacts ---

    async def get_contact(self, contact_id) -> Optional[dict]:
        if not contact_id:
            return None
        try:
            data = await self._get(f"/contacts/{contact_id}")
        except MalformedPayloadError as e:
            logger.warning(f"Could not read contact {contact_id}: {e}")
            return None
        if data is None:
            logger.warning(f"Could not fetch contact details for {contact_id}")
            return None
        contact = data.get("payload") if isinstance(data, dict) else None
        return contact if isinstance(contact, dict) else None
