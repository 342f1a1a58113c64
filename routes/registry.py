"""
Route Registry — Loads, validates, and resolves routes.

Routes come from code (Route objects) or from YAML/dict config. Every
route is validated on registration: duplicate ids and transitions to
unknown steps raise RouteDefinitionError.

YAML shape:

    routes:
      - id: book_flight
        title: Book a flight
        when: ["User wants to book a flight"]
        required_fields: [origin, destination]
        on_complete: feedback
        initial_step: {description: "Greet and ask for origin", collect: [origin]}
        steps:
          - description: Ask for destination
            collect: [destination]

A route whose steps declare no `next` is built as a linear chain ending at
END_ROUTE. Declaring `next` on any step (or on initial_step) switches to
graph form, where each `next` entry names a target step id or END_ROUTE.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from core.errors import RouteDefinitionError
from routes.models import END_ROUTE_ID, Guideline, Route, RouteTransitionConfig

logger = structlog.get_logger()

_STEP_KEYS = ("id", "description", "collect", "requires", "when", "skip_if",
              "tools", "prompt", "prepared_to_respond")


class RouteRegistry:
    """Central registry of routes, indexed by id and by title."""

    def __init__(self):
        self._routes: dict[str, Route] = {}
        self._title_index: dict[str, str] = {}       # lowercased title → route id

    # ── Registration ──────────────────────────────────

    def register(self, route: Route) -> Route:
        errors = self._validate(route)
        if errors:
            logger.error("invalid_route", route_id=route.id, errors=errors)
            raise RouteDefinitionError(f"Invalid route '{route.id}': {'; '.join(errors)}",
                                       route_id=route.id)

        self._routes[route.id] = route
        self._title_index[route.title.lower()] = route.id
        logger.info("route_registered",
                    route_id=route.id,
                    title=route.title,
                    steps=len(route.steps))
        return route

    def register_many(self, routes: list[Route]) -> list[Route]:
        return [self.register(r) for r in routes]

    def register_from_config(self, config: list[dict[str, Any]]) -> list[Route]:
        """Build and register routes from parsed YAML/dict config."""
        routes = [self.register(self._parse_route(raw)) for raw in config]
        logger.info("routes_loaded", count=len(routes))
        return routes

    def load_yaml(self, path: str) -> list[Route]:
        with open(Path(path)) as f:
            raw = yaml.safe_load(f) or {}
        entries = raw.get("routes", []) if isinstance(raw, dict) else raw
        return self.register_from_config(entries or [])

    def unregister(self, route_id: str) -> bool:
        route = self._routes.pop(route_id, None)
        if route is None:
            return False
        self._title_index.pop(route.title.lower(), None)
        return True

    # ── Resolution ────────────────────────────────────

    def get(self, route_id: str) -> Optional[Route]:
        return self._routes.get(route_id)

    def resolve(self, ref: str) -> Optional[Route]:
        """Find a route by id, then by case-insensitive title."""
        if not ref:
            return None
        route = self._routes.get(ref)
        if route is not None:
            return route
        route_id = self._title_index.get(ref.lower())
        return self._routes.get(route_id) if route_id else None

    def list_all(self) -> list[Route]:
        return list(self._routes.values())

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, route_id: str) -> bool:
        return route_id in self._routes

    # ── Validation ────────────────────────────────────

    def _validate(self, route: Route) -> list[str]:
        errors = []
        if route.id in self._routes and self._routes[route.id] is not route:
            errors.append(f"duplicate route id '{route.id}'")
        errors.extend(route.validate())
        overlap = set(route.required_fields) & set(route.optional_fields)
        if overlap:
            errors.append(f"fields both required and optional: {', '.join(sorted(overlap))}")
        return errors

    # ── Parsing ───────────────────────────────────────

    def _parse_route(self, raw: dict[str, Any]) -> Route:
        if not raw.get("title"):
            raise RouteDefinitionError("route config requires a title", route_id=raw.get("id", ""))

        raw_steps = raw.get("steps") or []
        raw_initial = dict(raw.get("initial_step") or {})
        graph_form = "next" in raw_initial or any("next" in s for s in raw_steps)

        on_complete = raw.get("on_complete")
        if isinstance(on_complete, dict):
            on_complete = RouteTransitionConfig.of(on_complete)

        route = Route(
            title=raw["title"],
            id=raw.get("id"),
            description=raw.get("description", ""),
            when=raw.get("when"),
            skip_if=raw.get("skip_if"),
            initial_step=self._step_spec(raw_initial),
            steps=None if graph_form else [self._step_spec(s, edge=True) for s in raw_steps],
            required_fields=raw.get("required_fields", []),
            optional_fields=raw.get("optional_fields", []),
            initial_data=raw.get("initial_data"),
            rules=raw.get("rules", []),
            prohibitions=raw.get("prohibitions", []),
            on_complete=on_complete,
            **({"end_step_prompt": raw["end_step_prompt"]} if raw.get("end_step_prompt") else {}),
        )
        for g in raw.get("guidelines", []):
            route.create_guideline(Guideline(scope_id=route.id, **g))

        if graph_form:
            self._wire_graph(route, raw_initial, raw_steps)
        return route

    @staticmethod
    def _step_spec(raw: dict[str, Any], edge: bool = False) -> dict[str, Any]:
        keys = _STEP_KEYS + (("condition", "tool") if edge else ())
        return {k: raw[k] for k in keys if k in raw}

    def _wire_graph(self, route: Route, raw_initial: dict[str, Any], raw_steps: list[dict[str, Any]]):
        for raw in raw_steps:
            if not raw.get("id"):
                raise RouteDefinitionError("graph-form steps require an id", route_id=route.id)
            route.create_step(**self._step_spec(raw))

        for source, raw in [(route.initial_step, raw_initial)] + [
            (route.get_step(s["id"]), s) for s in raw_steps
        ]:
            for edge in raw.get("next", []) or []:
                if isinstance(edge, str):
                    edge = {"step": edge}
                target = edge.get("step", END_ROUTE_ID)
                source.next_step(target, condition=edge.get("condition"), tool=edge.get("tool"),
                                 instructions=edge.get("instructions", ""))
