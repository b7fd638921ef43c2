"""Chatwoot payloads -> dashboard ticket and message records."""
import time
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup

import settings

SUBJECT_MAX = 80
UNSPECIFIED_SUBJECT = "Assunto não especificado"
UNKNOWN_CONTACT = "Contato Desconhecido"
DEFAULT_CONTACT = "Contato"
NOT_AVAILABLE = "N/A"
SYSTEM_SENDER = "Sistema"
HISTORY_UNAVAILABLE = "Falha ao carregar histórico desta conversa."

STORE_DOWN_LABEL = "loja-parada"

# normalized upstream status -> (display label, css class)
STATUS_TABLE = {
    "resolved": ("Resolvido", "status-resolved"),
    "pending": ("Pendente", "status-on-hold"),
    "open": ("Aberto", "status-aberto"),
    "snoozed": ("Adiado", "status-on-hold"),
    "on_hold": ("Adiado", "status-on-hold"),
}

ATTACHMENT_LABELS = {
    "image": ("Imagem", "imagem"),
    "audio": ("Áudio", "áudio"),
    "video": ("Vídeo", "vídeo"),
    "file": ("Arquivo", "documento"),
}
ATTACHMENT_FALLBACK = ("Anexo", "mídia")

INCOMING, OUTGOING, ACTIVITY, TEMPLATE = 0, 1, 2, 3


def _strip_html(s: str) -> str:
    return BeautifulSoup(s or "", "html.parser").get_text(separator=" ", strip=True)


def _normalize_status(status: str) -> str:
    return "_".join(status.strip().lower().replace("-", " ").replace("_", " ").split())


def resolve_status(status, labels=None) -> tuple[str, str]:
    """Display label and css class for a conversation status.

    The store-down label wins over any status. Otherwise synonyms such as
    ``on-hold``/``On Hold``/``on_hold`` collapse onto one table entry.
    """
    if STORE_DOWN_LABEL in (labels or []):
        return "Loja Parada", "status-loja-parada"
    raw = str(status or "")
    known = STATUS_TABLE.get(_normalize_status(raw))
    if known:
        return known
    return raw[:1].upper() + raw[1:], f"status-{raw.lower()}"


def resolve_company(contact) -> str:
    if not contact:
        return NOT_AVAILABLE
    company = contact.get("company") or {}
    if company.get("name"):
        return company["name"]
    additional = contact.get("additional_attributes") or {}
    if additional.get("company_name"):
        return additional["company_name"]
    custom = contact.get("custom_attributes") or {}
    if custom.get("empresa"):
        return custom["empresa"]
    return NOT_AVAILABLE


def _as_text(value):
    # custom attributes are free-form; numbers and lists show up too
    if value is None or isinstance(value, str):
        return value
    return str(value)


def truncate_subject(subject: str) -> str:
    subject = _as_text(subject) or ""
    if len(subject) > SUBJECT_MAX:
        return subject[:SUBJECT_MAX] + "..."
    return subject


def format_date(epoch) -> str:
    if not epoch:
        return ""
    tz = ZoneInfo(settings.DISPLAY_TIMEZONE)
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc).astimezone(tz).strftime("%d/%m/%Y")


def contact_name_for(conv: dict) -> str:
    sender = (conv.get("meta") or {}).get("sender") or {}
    return sender.get("name") or DEFAULT_CONTACT


def conversation_to_ticket(conv: dict, contact=None) -> dict:
    meta = conv.get("meta") or {}
    messages = conv.get("messages") or []
    first_content = _as_text(messages[0].get("content")) if messages and isinstance(messages[0], dict) else None

    custom_subject = _as_text((conv.get("custom_attributes") or {}).get("problema"))
    subject = custom_subject or first_content or UNSPECIFIED_SUBJECT

    description = subject
    if subject == UNSPECIFIED_SUBJECT and first_content:
        description = first_content

    raw_status = conv.get("status") or ""
    status_text, status_class = resolve_status(raw_status, conv.get("labels"))

    return {
        "id": str(conv["id"]),
        "status": status_text,
        "rawStatus": raw_status,
        "statusClass": status_class,
        "type": (meta.get("inbox") or {}).get("name") or NOT_AVAILABLE,
        "assunto": truncate_subject(subject),
        "agent": (meta.get("assignee") or {}).get("name") or NOT_AVAILABLE,
        "dateCreated": format_date(conv.get("created_at")),
        "lastActivityAt": int(conv.get("last_activity_at") or 0),
        "contactName": (meta.get("sender") or {}).get("name") or UNKNOWN_CONTACT,
        "empresa": resolve_company(contact),
        "modalDescription": description,
    }


def is_system_message(msg: dict) -> bool:
    return msg.get("message_type") in (ACTIVITY, TEMPLATE) or bool(msg.get("private"))


def _sender_label(msg: dict, system: bool, contact_name: str) -> str:
    sender = msg.get("sender")
    if system or not sender:
        return SYSTEM_SENDER
    kind = msg.get("message_type")
    if kind == INCOMING:
        return f"{sender.get('name') or contact_name} (Cliente)"
    if kind == OUTGOING:
        return f"{sender.get('name') or 'Agente'} (Agente)"
    return sender.get("name") or SYSTEM_SENDER


def _email_text(msg: dict) -> str:
    email = (msg.get("content_attributes") or {}).get("email") or {}
    html = (email.get("html_content") or {}).get("full")
    return _strip_html(html) if html else ""


def _attachment_placeholder(attachment: dict) -> str:
    label, default_name = ATTACHMENT_LABELS.get(attachment.get("file_type"), ATTACHMENT_FALLBACK)
    return f"[{label}: {attachment.get('file_name') or default_name}]"


def transform_message(msg: dict, contact_name: str) -> dict:
    system = is_system_message(msg)
    text = msg.get("content") or _email_text(msg)
    attachments = msg.get("attachments") or []

    if attachments:
        placeholder = _attachment_placeholder(attachments[0])
        text = f"{text} {placeholder}" if text else placeholder
    elif not text:
        text = "(Ação do sistema ou nota interna)" if system else "(Mensagem sem conteúdo)"

    return {
        "id": msg.get("id"),
        "sender": _sender_label(msg, system, contact_name),
        "text": text,
        "timestamp": msg.get("created_at"),
        "isSystemMessage": system,
        "attachments": attachments,
    }


def dedupe_messages(messages: list) -> list:
    """One entry per upstream message id, keeping the last one seen, oldest first."""
    by_id = {}
    for msg in messages:
        if isinstance(msg, dict) and msg.get("id") is not None:
            by_id[msg["id"]] = msg
    return sorted(by_id.values(), key=lambda m: (m.get("created_at") or 0, m["id"]))


def transform_messages(messages: list, contact_name: str) -> list:
    if not messages:
        return []
    return [transform_message(m, contact_name) for m in dedupe_messages(messages)]


def history_unavailable(now=None) -> list:
    """Stand-in history served when a conversation's messages cannot be fetched."""
    now = time.time() if now is None else now
    return [{
        "id": int(now * 1000),
        "sender": SYSTEM_SENDER,
        "text": HISTORY_UNAVAILABLE,
        "timestamp": int(now),
        "isSystemMessage": True,
        "attachments": [],
    }]
