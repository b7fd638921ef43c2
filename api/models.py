import json
from contextlib import contextmanager
from datetime import datetime
from sqlalchemy import create_engine, Column, BigInteger, String, Text, DateTime
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

import settings


def create_db_engine(url: str):
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty db
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update(pool_size=10, max_overflow=20, pool_recycle=3600, pool_timeout=60)
    return create_engine(url, **kwargs)


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine)
Base = declarative_base()


class Ticket(Base):
    __tablename__ = 'tickets'
    id = Column(String(64), primary_key=True)  # Chatwoot conversation id
    status = Column(Text, nullable=True)
    raw_status = Column(String(64), nullable=True)
    status_class = Column(String(64), nullable=True)
    type = Column(Text, nullable=True)
    assunto = Column(Text, nullable=True)
    agent = Column(Text, nullable=True)
    date_created = Column(String(16), nullable=True)
    last_activity_at = Column(BigInteger, nullable=False, default=0, index=True)
    contact_name = Column(Text, nullable=True)
    empresa = Column(Text, nullable=True)
    modal_description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)


class ConversationMessages(Base):
    __tablename__ = 'conversations'
    ticket_id = Column(String(64), primary_key=True)
    messages = Column(Text, nullable=False, default='[]')  # JSON array
    updated_at = Column(DateTime, default=datetime.utcnow)


# frontend key -> column
TICKET_FIELDS = {
    "id": "id",
    "status": "status",
    "rawStatus": "raw_status",
    "statusClass": "status_class",
    "type": "type",
    "assunto": "assunto",
    "agent": "agent",
    "dateCreated": "date_created",
    "lastActivityAt": "last_activity_at",
    "contactName": "contact_name",
    "empresa": "empresa",
    "modalDescription": "modal_description",
}


def ticket_to_dict(row: Ticket) -> dict:
    return {key: getattr(row, col) for key, col in TICKET_FIELDS.items()}


def init_db(bind=None):
    Base.metadata.create_all(bind or engine)


def session_scope(factory):
    @contextmanager
    def scope():
        s = factory()
        try:
            yield s
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()
    return scope


get_session = session_scope(SessionLocal)

# --- tickets ---

def _upsert_ticket(s, ticket: dict, only_if_newer: bool = False) -> bool:
    row = s.get(Ticket, ticket["id"])
    if row is None:
        row = Ticket(id=ticket["id"])
        s.add(row)
    elif only_if_newer and (row.last_activity_at or 0) > (ticket.get("lastActivityAt") or 0):
        return False
    for key, col in TICKET_FIELDS.items():
        if key != "id":
            setattr(row, col, ticket.get(key))
    row.last_activity_at = ticket.get("lastActivityAt") or 0
    row.updated_at = datetime.utcnow()
    return True


def put_ticket(s, ticket: dict, only_if_newer: bool = False) -> bool:
    """Replace the cached ticket. With only_if_newer, an older lastActivityAt is ignored."""
    written = _upsert_ticket(s, ticket, only_if_newer)
    s.commit()
    return written


def put_tickets(s, tickets: list):
    # last one wins for repeated ids
    for t in {t["id"]: t for t in tickets}.values():
        _upsert_ticket(s, t)
    s.commit()


def get_tickets(s, page: int, per_page: int) -> list:
    page = max(1, int(page))
    per_page = max(1, int(per_page))
    q = (
        s.query(Ticket)
        .order_by(Ticket.last_activity_at.desc(), Ticket.id.desc())
        .limit(per_page)
        .offset((page - 1) * per_page)
    )
    return [ticket_to_dict(t) for t in q.all()]


def get_tickets_by_ids(s, ticket_ids: list) -> list:
    if not ticket_ids:
        return []
    q = s.query(Ticket).filter(Ticket.id.in_(ticket_ids)).order_by(Ticket.last_activity_at.desc(), Ticket.id.desc())
    return [ticket_to_dict(t) for t in q.all()]


def count_tickets(s) -> int:
    return s.query(Ticket).count()

# --- message blobs ---

def _upsert_messages(s, ticket_id: str, messages: list):
    row = s.get(ConversationMessages, ticket_id)
    if row is None:
        row = ConversationMessages(ticket_id=ticket_id)
        s.add(row)
    row.messages = json.dumps(messages, ensure_ascii=False)
    row.updated_at = datetime.utcnow()


def put_conversation_messages(s, ticket_id: str, messages: list):
    """Store the full message snapshot for a ticket, replacing any previous one."""
    _upsert_messages(s, str(ticket_id), messages)
    s.commit()


def put_conversations(s, conversations: dict):
    for ticket_id, messages in conversations.items():
        _upsert_messages(s, str(ticket_id), messages)
    s.commit()


def get_conversation_messages(s, ticket_id: str):
    row = s.get(ConversationMessages, str(ticket_id))
    return json.loads(row.messages) if row else None


def get_conversations_by_ids(s, ticket_ids: list) -> dict:
    if not ticket_ids:
        return {}
    rows = s.query(ConversationMessages).filter(ConversationMessages.ticket_id.in_(ticket_ids)).all()
    return {r.ticket_id: json.loads(r.messages or '[]') for r in rows}


def clear_cache(s):
    s.query(ConversationMessages).delete()
    s.query(Ticket).delete()
    s.commit()
