from typing import Optional

from fastapi import FastAPI, Request, HTTPException, Query, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import models
import settings
from chatwoot import ChatwootClient, ChatwootNotConfigured
from engine.sync import TicketSync, SyncInProgress
from logging_conf import logger

app = FastAPI(title="Tickets Dashboard", version="1.0")

# The browser UI is served from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when allow_origins is "*"
    allow_methods=["*"],
    allow_headers=["*"],
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc.detail)}, headers=CORS_HEADERS)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": str(exc)},
        headers=CORS_HEADERS,
    )


_sync: Optional[TicketSync] = None


def get_sync() -> TicketSync:
    global _sync
    if _sync is None:
        try:
            _sync = TicketSync(ChatwootClient())
        except ChatwootNotConfigured as e:
            logger.error(f"Chatwoot settings missing: {e}")
            raise HTTPException(status_code=500, detail="Configuração do servidor incompleta.")
    return _sync


@app.on_event("startup")
def _startup():
    models.init_db()
    missing = settings.validate_config()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}")
    logger.info(f"Tickets dashboard started (db: {models.engine.url.get_backend_name()})")


@app.on_event("shutdown")
async def _shutdown():
    if _sync is not None:
        await _sync.client.aclose()


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/ticket-history")
async def ticket_history(
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.DEFAULT_PER_PAGE, ge=1, le=200),
    contactId: Optional[str] = None,
    sync: TicketSync = Depends(get_sync),
):
    try:
        return await sync.get_ticket_page(page, per_page, contact_id=contactId)
    except SyncInProgress as e:
        return JSONResponse(status_code=202, content={"message": str(e)})
    except Exception as e:
        logger.error(f"Ticket history failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": str(e) or "Erro interno do servidor ao processar os tickets."},
        )


@app.get("/api/conversations/{ticket_id}")
async def conversation_messages(ticket_id: str, sync: TicketSync = Depends(get_sync)):
    messages = await sync.get_messages(ticket_id)
    if messages is None:
        raise HTTPException(status_code=404, detail=f"Conversation {ticket_id} not found")
    return {"ticketId": ticket_id, "messages": messages}


@app.post("/api/chatwoot-webhook")
async def chatwoot_webhook(req: Request, sync: TicketSync = Depends(get_sync)):
    try:
        event = await req.json()
        if not isinstance(event, dict):
            raise ValueError("Webhook body must be a JSON object")
        logger.info(f"Received Chatwoot webhook event: {event.get('event')} {event.get('id')}")
        await sync.handle_event(event)
        return {"status": "ok", "received": True}
    except Exception as e:
        logger.error(f"Error processing Chatwoot webhook: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error", "detail": str(e)})


@app.post("/admin/resync")
async def resync(clear: bool = False, sync: TicketSync = Depends(get_sync)):
    """Re-run the full backfill on demand, optionally wiping the cache first."""
    try:
        stored = await sync.resync(clear=clear)
    except SyncInProgress as e:
        return JSONResponse(status_code=202, content={"ok": False, "message": str(e)})
    return {"ok": True, "tickets": stored}


@app.get("/admin/sync-status")
def sync_status(sync: TicketSync = Depends(get_sync)):
    return {"in_progress": sync.guard.in_progress}


@app.get("/admin/db_stats")
def db_stats(sync: TicketSync = Depends(get_sync)):
    """Get database statistics"""
    with sync.session() as s:
        total_tickets = models.count_tickets(s)
        total_conversations = s.query(models.ConversationMessages).count()
        newest = s.query(models.Ticket).order_by(models.Ticket.last_activity_at.desc()).first()
        oldest = s.query(models.Ticket).order_by(models.Ticket.last_activity_at.asc()).first()

        return {
            "total_tickets": total_tickets,
            "total_conversations": total_conversations,
            "newest_activity_at": newest.last_activity_at if newest else None,
            "oldest_activity_at": oldest.last_activity_at if oldest else None,
            "newest_ticket": newest.id if newest else None,
            "oldest_ticket": oldest.id if oldest else None,
        }
