"""Notification dispatcher — render an email template and send it via Resend.

Dispatch is fire-and-forget from the engine's point of view: ``notify`` never
raises, so a dispatcher outage cannot block progression.
"""

import logging

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, select_autoescape

from drip_engine import supabase_client as db
from drip_engine.config import (
    EMAIL_TEMPLATES_DIR,
    NOTIFY_FROM_EMAIL,
    NOTIFY_FROM_NAME,
    RESEND_API_KEY,
)

logger = logging.getLogger(__name__)

SUBJECTS = {
    "welcome": "You're in: {{ sequence_name }}",
    "item_unlocked": "{{ item_title or 'Your next step' }} is ready",
    "sequence_completed": "You finished {{ sequence_name }}!",
}

_env = Environment(
    loader=FileSystemLoader(str(EMAIL_TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
)


def render(template_ref: str, context: dict) -> tuple[str, str]:
    """Render (subject, html) for a template. Raises TemplateNotFound for unknown refs."""
    html = _env.get_template(f"{template_ref}.html").render(**context)
    subject_src = SUBJECTS.get(template_ref, "{{ sequence_name }}")
    subject = _env.from_string(subject_src).render(**context)
    return subject, html


def send(template_ref: str, recipient: str, context: dict) -> str:
    """Render and send one email. Returns the Resend message id ("" when sending is disabled)."""
    subject, html = render(template_ref, context)

    if not RESEND_API_KEY:
        logger.debug("RESEND_API_KEY not set, skipping %s to %s", template_ref, recipient)
        return ""

    import resend

    if not resend.api_key:
        resend.api_key = RESEND_API_KEY

    result = resend.Emails.send({
        "from": f"{NOTIFY_FROM_NAME} <{NOTIFY_FROM_EMAIL}>",
        "to": [recipient],
        "subject": subject,
        "html": html,
    })
    return result.get("id", "")


def notify(template_ref: str | None, recipient: str, context: dict) -> str:
    """Send a notification, logging (not raising) any failure."""
    if not template_ref:
        return ""
    try:
        return send(template_ref, recipient, context)
    except TemplateNotFound:
        logger.error("Notification template '%s' not found", template_ref)
    except Exception as e:
        logger.exception("Notification %s to %s failed", template_ref, recipient)
        db.log_action("notification_failed", "contact", recipient, f"{template_ref}: {e}")
    return ""
