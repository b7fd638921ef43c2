"""Keeps the local ticket cache in step with Chatwoot.

Three ways data gets in:

* cold start: the cache is empty, so every conversation and its whole message
  history is pulled page by page before the first read is served;
* read fallback: a cached ticket without a message snapshot gets its history
  fetched live when it is shown;
* webhooks: one conversation is re-read and its snapshot replaced.

Writes are whole-row replacements. Webhook writes carrying an older
``lastActivityAt`` than the cached ticket are dropped.
"""
from typing import Optional

import models
import settings
from chatwoot import (
    CONTACT_EVENTS,
    CONVERSATION_EVENTS,
    MESSAGE_EVENTS,
    ChatwootClient,
    ChatwootError,
    extract_conversation_id,
)
from engine import transform
from logging_conf import logger

SYNC_BUSY_MESSAGE = "Sincronização inicial em andamento. Tente novamente em instantes."


class SyncInProgress(Exception):
    """A full sync is already running; the caller should retry later."""


class SyncGuard:
    """Single flag preventing overlapping full syncs.

    ``cold_start`` is set while the running sync is filling an empty cache;
    reads then see a partial table and must wait.
    """

    def __init__(self):
        self.in_progress = False
        self.cold_start = False

    def acquire(self, cold_start: bool = False) -> bool:
        # no await between check and set, so one event loop cannot double-start
        if self.in_progress:
            return False
        self.in_progress = True
        self.cold_start = cold_start
        return True

    def release(self):
        self.in_progress = False
        self.cold_start = False


class TicketSync:
    def __init__(self, client: ChatwootClient, session_factory=None, guard: Optional[SyncGuard] = None,
                 total_count_source: Optional[str] = None):
        self.client = client
        self.session = session_factory or models.get_session
        self.guard = guard or SyncGuard()
        self.total_count_source = total_count_source or settings.TOTAL_COUNT_SOURCE

    # --- fetch + transform ---

    async def _build(self, conv: dict, contact=None, lookup_contact: bool = True) -> tuple[dict, Optional[list]]:
        """Ticket and transformed history for one conversation (history None when the fetch failed)."""
        if contact is None and lookup_contact:
            sender_id = ((conv.get("meta") or {}).get("sender") or {}).get("id")
            if sender_id:
                contact = await self.client.get_contact(sender_id)
        ticket = transform.conversation_to_ticket(conv, contact)
        raw = await self.client.fetch_all_messages(conv["id"])
        if raw is None:
            logger.warning(f"Could not fetch messages for conversation {conv['id']}")
            return ticket, None
        if not raw:
            logger.info(f"Conversation {conv['id']} has no messages")
        return ticket, transform.transform_messages(raw, transform.contact_name_for(conv))

    async def _load_messages(self, ticket_id: str, contact_name: str) -> Optional[list]:
        raw = await self.client.fetch_all_messages(ticket_id)
        if raw is None:
            return None
        messages = transform.transform_messages(raw, contact_name)
        with self.session() as s:
            models.put_conversation_messages(s, ticket_id, messages)
        return messages

    # --- cold start ---

    async def full_backfill(self, cold_start: bool = False) -> int:
        if not self.guard.acquire(cold_start=cold_start):
            raise SyncInProgress(SYNC_BUSY_MESSAGE)
        stored = 0
        try:
            logger.info("Full sync started")
            async for page in self.client.iter_conversation_pages():
                for conv in page:
                    ticket, messages = await self._build(conv)
                    with self.session() as s:
                        models.put_ticket(s, ticket)
                        if messages is not None:
                            models.put_conversation_messages(s, ticket["id"], messages)
                    stored += 1
                logger.info(f"Full sync progress: {stored} tickets stored")
            logger.info(f"Full sync finished: {stored} tickets")
            return stored
        finally:
            self.guard.release()

    async def resync(self, clear: bool = False) -> int:
        if self.guard.in_progress:
            raise SyncInProgress("Sincronização já em andamento.")
        if clear:
            with self.session() as s:
                models.clear_cache(s)
            logger.info("Ticket cache cleared for resync")
        return await self.full_backfill(cold_start=clear)

    # --- reads ---

    async def _fill_missing(self, tickets: list, conversations: dict):
        for t in tickets:
            if t["id"] in conversations:
                continue
            contact_name = t.get("contactName")
            if not contact_name or contact_name == transform.UNKNOWN_CONTACT:
                contact_name = transform.DEFAULT_CONTACT
            try:
                messages = await self._load_messages(t["id"], contact_name)
            except ChatwootError as e:
                logger.warning(f"Could not load history for ticket {t['id']}: {e}")
                messages = None
            if messages is None:
                logger.warning(f"History unavailable for ticket {t['id']}")
                messages = transform.history_unavailable()
            conversations[t["id"]] = messages

    async def total_count(self) -> int:
        if self.total_count_source == "upstream":
            try:
                n = await self.client.get_total_count()
            except ChatwootError as e:
                logger.warning(f"Upstream total count unavailable: {e}")
                n = None
            if n is not None:
                return n
        with self.session() as s:
            return models.count_tickets(s)

    async def get_ticket_page(self, page: int = 1, per_page: Optional[int] = None, contact_id=None) -> dict:
        per_page = per_page or settings.DEFAULT_PER_PAGE
        if contact_id:
            return await self._contact_page(contact_id, page, per_page)

        if self.guard.in_progress and self.guard.cold_start:
            raise SyncInProgress(SYNC_BUSY_MESSAGE)
        with self.session() as s:
            empty = models.count_tickets(s) == 0
        if empty:
            logger.info("Ticket cache is empty, running initial sync")
            await self.full_backfill(cold_start=True)

        with self.session() as s:
            tickets = models.get_tickets(s, page, per_page)
            conversations = models.get_conversations_by_ids(s, [t["id"] for t in tickets])
        await self._fill_missing(tickets, conversations)
        return {
            "tickets": tickets,
            "conversations": conversations,
            "totalTicketsCount": await self.total_count(),
        }

    async def _contact_page(self, contact_id, page: int, per_page: int) -> dict:
        convs = await self.client.list_contact_conversations(contact_id)
        if convs is None:
            raise ChatwootError(f"Could not fetch conversations for contact {contact_id}")
        contact = await self.client.get_contact(contact_id)
        ids = []
        for conv in convs:
            ticket, messages = await self._build(conv, contact=contact, lookup_contact=False)
            with self.session() as s:
                models.put_ticket(s, ticket)
                if messages is not None:
                    models.put_conversation_messages(s, ticket["id"], messages)
            ids.append(ticket["id"])

        start = (max(1, int(page)) - 1) * per_page
        with self.session() as s:
            tickets = models.get_tickets_by_ids(s, ids)[start:start + per_page]
            conversations = models.get_conversations_by_ids(s, [t["id"] for t in tickets])
        await self._fill_missing(tickets, conversations)
        return {"tickets": tickets, "conversations": conversations, "totalTicketsCount": len(ids)}

    async def get_messages(self, ticket_id: str) -> Optional[list]:
        ticket_id = str(ticket_id)
        with self.session() as s:
            cached = models.get_conversation_messages(s, ticket_id)
            ticket = models.get_tickets_by_ids(s, [ticket_id])
        if cached is not None:
            return cached
        contact_name = transform.DEFAULT_CONTACT
        if ticket and ticket[0].get("contactName") not in (None, transform.UNKNOWN_CONTACT):
            contact_name = ticket[0]["contactName"]
        return await self._load_messages(ticket_id, contact_name)

    # --- webhooks ---

    async def refresh_conversation(self, conv_id, require_detail: bool = True) -> bool:
        """Re-read one conversation and replace its cached snapshot.

        Without ``require_detail`` a missing conversation detail still lets the
        message history through, stored under the generic contact name.
        """
        conv = await self.client.get_conversation(conv_id)
        if not conv:
            logger.warning(f"Failed to fetch conversation {conv_id}")
            if require_detail:
                return False
            return await self._load_messages(str(conv_id), transform.DEFAULT_CONTACT) is not None

        ticket, messages = await self._build(conv)
        with self.session() as s:
            if not models.put_ticket(s, ticket, only_if_newer=True):
                logger.info(f"Skipped stale update for ticket {ticket['id']}")
                return False
            if messages is not None:
                models.put_conversation_messages(s, ticket["id"], messages)
        logger.info(f"Updated ticket {ticket['id']} ({len(messages or [])} messages)")
        return True

    async def handle_event(self, event: dict) -> bool:
        """Apply one webhook event. Never raises; returns whether the cache changed."""
        kind = event.get("event")
        try:
            if kind in CONVERSATION_EVENTS or kind in MESSAGE_EVENTS:
                conv_id = extract_conversation_id(event)
                if not conv_id:
                    logger.warning(f"Conversation id not found in {kind} payload")
                    return False
                return await self.refresh_conversation(conv_id, require_detail=kind in CONVERSATION_EVENTS)
            if kind in CONTACT_EVENTS:
                logger.info(f"Contact event received, not acted on: {kind}")
                return False
            logger.info(f"Unhandled Chatwoot event type: {kind}")
            return False
        except Exception as e:
            logger.error(f"Error handling {kind} event: {e}", exc_info=True)
            return False
