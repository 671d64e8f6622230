"""Tests for refinery.routing (prefix routes table)."""

import json
from pathlib import Path

import pytest

from refinery.errors import NoRouteError
from refinery.routing import Route, Router, load_routes, routes_from_entries


class TestRouter:
    """Router.route_for: longest literal prefix wins."""

    def test_longest_prefix_wins(self) -> None:
        """A narrower sub-prefix beats its tenant prefix regardless of table order."""
        router = Router([Route(prefix="gt-", locator="/s/gt"), Route(prefix="gt-mr-", locator="/s/mr")])
        assert router.resolve("gt-mr-abc12") == "/s/mr"
        assert router.resolve("gt-42") == "/s/gt"
        reversed_router = Router(list(reversed(router.routes)))
        assert reversed_router.resolve("gt-mr-abc12") == "/s/mr"

    def test_no_route(self) -> None:
        """An id matching no prefix raises NoRouteError carrying the id."""
        router = Router([Route(prefix="gt-", locator="/s/gt")])
        with pytest.raises(NoRouteError) as exc:
            router.route_for("bd-1")
        assert exc.value.mr_id == "bd-1"
        assert exc.value.kind == "no_route"

    def test_duplicate_prefix_rejected(self) -> None:
        """Two routes with the same prefix are a configuration error."""
        with pytest.raises(ValueError, match="Duplicate"):
            Router([Route(prefix="gt-", locator="/a"), Route(prefix="gt-", locator="/b")])

    def test_shared_locator_rejected(self) -> None:
        """A store can only be configured with one prefix."""
        with pytest.raises(ValueError, match="both route"):
            Router([Route(prefix="gt-", locator="/a"), Route(prefix="gt-mr-", locator="/a")])

    def test_id_prefix_drops_trailing_dash(self) -> None:
        """id_prefix is the store's configured prefix form."""
        assert Route(prefix="gt-mr-", locator="/x").id_prefix == "gt-mr"


class TestLoadRoutes:
    """load_routes reads JSONL and YAML tables."""

    def test_jsonl_relative_paths(self, tmp_path: Path) -> None:
        """Relative paths resolve against the routes file directory; comments and blanks are skipped."""
        routes_file = tmp_path / "routes.jsonl"
        routes_file.write_text(
            "# town routes\n"
            + json.dumps({"prefix": "gt-", "path": "gastown/.beads"})
            + "\n\n"
            + json.dumps({"prefix": "hq-", "path": "/abs/hq"})
            + "\n",
            encoding="utf-8",
        )
        routes = load_routes(routes_file)
        assert [r.prefix for r in routes] == ["gt-", "hq-"]
        assert routes[0].locator == str(tmp_path.resolve() / "gastown/.beads")
        assert routes[1].locator == "/abs/hq"

    def test_jsonl_invalid_line(self, tmp_path: Path) -> None:
        """A broken JSON line reports file and line number."""
        routes_file = tmp_path / "routes.jsonl"
        routes_file.write_text('{"prefix": "gt-", "path": "a"}\n{broken\n', encoding="utf-8")
        with pytest.raises(ValueError, match="routes.jsonl:2"):
            load_routes(routes_file)

    def test_yaml_routes_key_and_locator(self, tmp_path: Path) -> None:
        """YAML with a routes list; locator is accepted as an alias of path."""
        routes_file = tmp_path / "routes.yaml"
        routes_file.write_text("routes:\n  - prefix: gt-\n    locator: stores/gt\n", encoding="utf-8")
        routes = load_routes(routes_file)
        assert routes == [Route(prefix="gt-", locator=str(tmp_path.resolve() / "stores/gt"))]

    def test_yaml_bare_list(self, tmp_path: Path) -> None:
        """A bare YAML list is accepted."""
        routes_file = tmp_path / "routes.yml"
        routes_file.write_text("- prefix: gt-\n  path: /s/gt\n", encoding="utf-8")
        assert load_routes(routes_file)[0].locator == "/s/gt"

    def test_entry_without_path(self, tmp_path: Path) -> None:
        """An entry without path or locator is rejected."""
        with pytest.raises(ValueError, match="without path"):
            routes_from_entries([{"prefix": "gt-"}], tmp_path)
