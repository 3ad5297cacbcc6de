"""Catalog → Supabase sync.

Seeds the built-in YAML sequences into dp_sequences. The catalog only creates
sequences that don't exist yet; once a slug is in the database, the database
wins and operators edit it through the API.
"""

import logging

from drip_engine import supabase_client as db
from drip_engine.errors import ValidationFailure
from drip_engine.sequences import load_catalog
from drip_engine.services.sequence_model import create_sequence, slugify

logger = logging.getLogger(__name__)


def sync_catalog(catalog: dict[str, dict] | None = None) -> dict:
    """Create any catalog sequence missing from the store.

    Returns dict with counts: {"created": N, "existing": N, "invalid": N}.
    """
    catalog = load_catalog() if catalog is None else catalog
    stats = {"created": 0, "existing": 0, "invalid": 0}

    for slug, defn in catalog.items():
        if db.get_sequence_row_by_slug(slugify(slug)):
            stats["existing"] += 1
            continue
        try:
            create_sequence(defn, created_by="catalog")
        except ValidationFailure as e:
            logger.error("Catalog sequence %s is invalid: %s", slug, e)
            stats["invalid"] += 1
            continue
        stats["created"] += 1

    return stats
