"""Technology knowledge base: profiles for common web technologies.

Profiles are loaded once from ``technologies.json`` into a map keyed by
lower-cased name plus a category index. Lookups fall back to partial name
matching (``react.js`` finds ``React``).
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DATA_FILE = Path(__file__).parent / "technologies.json"

# Shorter names are only matched exactly ("go" must not find "django")
_MIN_PARTIAL_LEN = 3


@dataclass(frozen=True)
class TechnologyProfile:
    name: str
    category: str
    difficulty: str
    description: str
    alternatives: list[str] = field(default_factory=list)
    cost_estimate: dict[str, str] = field(default_factory=dict)
    learning_resources: list[str] = field(default_factory=list)
    typical_use_case: str = ""
    market_demand: str = "medium"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TechnologyProfile:
        return cls(
            name=raw["name"],
            category=raw["category"],
            difficulty=raw.get("difficulty", "medium"),
            description=raw.get("description", ""),
            alternatives=list(raw.get("alternatives", [])),
            cost_estimate=dict(raw.get("costEstimate", {})),
            learning_resources=list(raw.get("learningResources", [])),
            typical_use_case=raw.get("typicalUseCase", ""),
            market_demand=raw.get("marketDemand", "medium"),
        )


def infer_resource_type(url: str) -> str:
    lower = url.lower()
    if any(k in lower for k in ("docs", "documentation", ".dev", "developer.")):
        return "documentation"
    if "tutorial" in lower:
        return "tutorial"
    if any(k in lower for k in ("course", "udemy", "egghead", "university")):
        return "course"
    if "guide" in lower:
        return "guide"
    return "resource"


class TechnologyKnowledgeBase:
    def __init__(self, path: Path | str = DATA_FILE):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._by_name: dict[str, TechnologyProfile] = {}
        self._by_category: dict[str, list[TechnologyProfile]] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """Read the profile file. Raises RuntimeError if it cannot be read."""
        with self._lock:
            if self._loaded:
                return
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
                profiles = [TechnologyProfile.from_dict(t) for t in data["technologies"]]
            except (OSError, ValueError, KeyError) as exc:
                raise RuntimeError(f"Failed to load technology knowledge base: {exc}") from exc
            self._by_name = {p.name.lower(): p for p in profiles}
            self._by_category = {}
            for p in profiles:
                self._by_category.setdefault(p.category, []).append(p)
            self._loaded = True
        log.info("Loaded %d technologies from knowledge base", len(self._by_name))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, name: str) -> TechnologyProfile | None:
        self._ensure_loaded()
        term = (name or "").strip().lower()
        if not term:
            return None
        profile = self._by_name.get(term)
        if profile is not None:
            return profile
        for key, candidate in self._by_name.items():
            shorter = key if len(key) <= len(term) else term
            if len(shorter) >= _MIN_PARTIAL_LEN and (term in key or key in term):
                return candidate
        return None

    def by_category(self, category: str) -> list[TechnologyProfile]:
        self._ensure_loaded()
        return list(self._by_category.get(category, []))

    def categories(self) -> list[str]:
        self._ensure_loaded()
        return list(self._by_category)

    def all(self) -> list[TechnologyProfile]:
        self._ensure_loaded()
        return list(self._by_name.values())

    def fallback_profile(self, name: str, category: str | None = None) -> TechnologyProfile:
        return TechnologyProfile(
            name=name,
            category=category or "unknown",
            difficulty="medium",
            description=f"{name} - Technology details not available in knowledge base",
            cost_estimate={"development": "medium", "hosting": "medium", "maintenance": "medium"},
            typical_use_case="General purpose technology",
        )

    def alternatives_for(self, name: str) -> list[dict[str, str]]:
        """Alternatives for *name*, each annotated with its own difficulty and demand."""
        profile = self.get(name)
        if profile is None:
            return []
        result = []
        for alt in profile.alternatives:
            alt_profile = self.get(alt)
            result.append({
                "name": alt,
                "difficulty": alt_profile.difficulty if alt_profile else "unknown",
                "marketDemand": alt_profile.market_demand if alt_profile else "unknown",
            })
        return result

    def saas_alternatives(self, category: str) -> list[dict[str, Any]]:
        return [
            {"name": p.name, "category": p.category, "costEstimate": p.cost_estimate}
            for p in self.by_category(category)
            if any(k in p.category for k in ("service", "platform", "hosting"))
        ]

    def learning_resources(self, name: str) -> list[dict[str, str]]:
        profile = self.get(name)
        if profile is None:
            return []
        return [{"url": url, "type": infer_resource_type(url)} for url in profile.learning_resources]


knowledge_base = TechnologyKnowledgeBase()
