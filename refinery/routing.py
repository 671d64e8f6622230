"""Prefix routing: map an entity id to the store that owns it.

The routes table is loaded once at start and never consults the working
directory or environment. The longest matching prefix wins, so a narrow
sub-prefix (``gt-mr-``) takes precedence over its tenant prefix (``gt-``).
"""

import json
import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field

from refinery.errors import NoRouteError

LOG = logging.getLogger("refinery.routing")


class Route(BaseModel):
    """One routing entry: ids starting with ``prefix`` live at ``locator``."""

    prefix: str = Field(..., min_length=1, description="Literal id prefix, e.g. gt- or gt-mr-")
    locator: str = Field(..., min_length=1, description="Store locator (directory of the store)")

    model_config = {"frozen": True}

    @property
    def id_prefix(self) -> str:
        """Prefix as the store configures it (without the trailing dash)."""
        return self.prefix.rstrip("-")


class Router:
    """Resolve ids to store locators by longest literal prefix."""

    def __init__(self, routes: Iterable[Route]) -> None:
        entries = list(routes)
        seen: set[str] = set()
        owners: dict[str, str] = {}
        for route in entries:
            if route.prefix in seen:
                raise ValueError(f"Duplicate route prefix: {route.prefix!r}")
            seen.add(route.prefix)
            # A store is configured with exactly one id prefix
            owner = owners.setdefault(route.locator, route.prefix)
            if owner != route.prefix:
                raise ValueError(f"Prefixes {owner!r} and {route.prefix!r} both route to {route.locator}")
        # Longest first so the first hit is the most specific one
        self._routes = tuple(sorted(entries, key=lambda r: len(r.prefix), reverse=True))

    @property
    def routes(self) -> tuple[Route, ...]:
        return self._routes

    def route_for(self, entity_id: str) -> Route:
        """Return the most specific route for ``entity_id``."""
        for route in self._routes:
            if entity_id.startswith(route.prefix):
                return route
        raise NoRouteError(f"No route for {entity_id!r}", mr_id=entity_id)

    def resolve(self, entity_id: str) -> str:
        """Return the store locator for ``entity_id``."""
        return self.route_for(entity_id).locator


def _route_from_raw(raw: dict, base_dir: Path) -> Route:
    locator = raw.get("locator") or raw.get("path")
    if not locator:
        raise ValueError(f"Route without path: {raw!r}")
    path = Path(str(locator))
    if not path.is_absolute():
        path = base_dir / path
    return Route(prefix=str(raw.get("prefix", "")), locator=str(path))


def routes_from_entries(entries: Iterable[dict], base_dir: Path) -> list[Route]:
    """Build routes from raw ``{prefix, path}`` dicts, resolving relative paths against base_dir."""
    return [_route_from_raw(raw, Path(base_dir)) for raw in entries]


def load_routes(path: Path) -> list[Route]:
    """Load the routes table from ``routes.jsonl`` or a YAML file.

    JSONL: one ``{"prefix": "gt-", "path": "gastown/.beads"}`` object per line.
    YAML: ``routes: [{prefix: gt-, path: gastown/.beads}, ...]``.
    Relative paths are resolved against the directory of the routes file.
    """
    path = Path(path)
    base_dir = path.parent.resolve()
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        entries = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid route: {e}") from e
    else:
        raw = yaml.safe_load(text) or {}
        entries = (raw.get("routes") or []) if isinstance(raw, dict) else raw
    routes = routes_from_entries(entries, base_dir)
    LOG.debug("Loaded %d routes from %s", len(routes), path)
    return routes
