"""Built-in sequence catalog — YAML definitions shipped with the package."""

from pathlib import Path

import yaml

from drip_engine.config import CATALOG_DIR


def _load(path: Path) -> dict:
    defn = yaml.safe_load(path.read_text()) or {}
    defn.setdefault("slug", path.stem.replace("_", "-"))
    return defn


def load_catalog(directory: Path = CATALOG_DIR) -> dict[str, dict]:
    """All catalog definitions keyed by slug."""
    catalog = {}
    for path in sorted(directory.glob("*.yaml")):
        defn = _load(path)
        catalog[defn["slug"]] = defn
    return catalog


def get_catalog_entry(slug: str) -> dict | None:
    """Get a catalog definition by slug."""
    return load_catalog().get(slug)
