"""Identity resolution — map a participant email to a canonical lead id."""

import logging

from drip_engine import supabase_client as db
from drip_engine.errors import DependencyUnavailable

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def resolve_lead_id(email: str) -> str | None:
    """Look up the lead/CRM id for an email. No match (or lookup failure) is None."""
    try:
        with db.store_errors("lead lookup"):
            lead = db.get_lead_by_email(normalize_email(email))
    except DependencyUnavailable as e:
        logger.warning("Lead lookup failed for %s: %s", email, e)
        return None
    return str(lead["id"]) if lead else None
