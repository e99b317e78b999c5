"""Technical complexity scoring from detected technologies.

``calculate_complexity`` is the simple additive score used by clonability.
``calculate_enhanced_complexity`` adds a per-layer breakdown built from the
knowledge base, a technology-count bonus and a licensing flag.
"""
from __future__ import annotations

import re
from typing import Iterable, Sequence

from ventureclone.knowledge_base import TechnologyKnowledgeBase, knowledge_base
from ventureclone.schemas import (
    ComplexityBreakdown,
    ComplexityFactors,
    ComplexityResult,
    DetectedTechnology,
    EnhancedComplexityFactors,
    EnhancedComplexityResult,
    LayerScore,
)

NO_CODE_PLATFORMS = ("Webflow", "Wix", "Squarespace", "Shopify", "WordPress.com")
MODERN_FRAMEWORKS = ("React", "Vue.js", "Next.js", "Nuxt.js", "Angular", "Svelte", "Gatsby")
COMPLEX_BACKEND = ("Node.js", "Django", "Ruby on Rails", "Laravel", "Spring", "ASP.NET")
MICROSERVICES = ("Kubernetes", "Docker", "Consul", "Istio", "Envoy")
CUSTOM_INFRA = ("AWS", "Google Cloud", "Azure", "Terraform", "Ansible")

COMMERCIAL_LICENSED = (
    "Oracle", "Microsoft SQL Server", "SQL Server", "WebLogic", "WebSphere",
    "SAP", "Sitecore", "Adobe Experience Manager", "ColdFusion", "Salesforce Commerce",
)

LAYER_MAX = {"frontend": 3, "backend": 4, "infrastructure": 3}

# score used when no technology can be placed in any layer
NEUTRAL_COMPLEXITY = 5

# knowledge-base category fragment -> layer
_KB_LAYERS = (
    ("no-code", "frontend"),
    ("ecommerce", "frontend"),
    ("frontend", "frontend"),
    ("css", "frontend"),
    ("static-site", "frontend"),
    ("backend", "backend"),
    ("database", "backend"),
    ("programming-language", "backend"),
    ("cms", "backend"),
    ("container", "infrastructure"),
    ("hosting", "infrastructure"),
    ("cdn", "infrastructure"),
    ("cloud", "infrastructure"),
    ("web-server", "infrastructure"),
)

# detected (fingerprint) category -> layer
_DETECTED_LAYERS = {
    "javascript frameworks": "frontend",
    "javascript libraries": "frontend",
    "ui frameworks": "frontend",
    "static site generator": "frontend",
    "web frameworks": "backend",
    "programming languages": "backend",
    "databases": "backend",
    "cms": "backend",
    "blogs": "backend",
    "ecommerce": "frontend",
    "web servers": "infrastructure",
    "cdn": "infrastructure",
    "paas": "infrastructure",
    "iaas": "infrastructure",
    "reverse proxies": "infrastructure",
    "containers": "infrastructure",
}

_DIFFICULTY_POINTS = {
    "frontend": {"very-easy": 1, "easy": 1, "medium": 2, "hard": 3, "very-hard": 3},
    "backend": {"very-easy": 1, "easy": 2, "medium": 3, "hard": 3, "very-hard": 4},
    "infrastructure": {"very-easy": 1, "easy": 1, "medium": 2, "hard": 3, "very-hard": 3},
}


def _names(technologies: Iterable[DetectedTechnology]) -> list[str]:
    return [t.name for t in technologies]


def _mentions(name: str, candidate: str) -> bool:
    """True when *candidate* appears in *name* as a whole word, so "Preact" is not React."""
    pattern = rf"(?<![a-z0-9]){re.escape(candidate.lower())}(?![a-z0-9])"
    return re.search(pattern, name.lower()) is not None


def _has_any(names: Sequence[str], candidates: Sequence[str]) -> bool:
    return any(_mentions(n, c) for n in names for c in candidates)


def _framework_level(no_code: bool, modern: bool, backend: bool) -> str:
    if no_code:
        return "low"
    if backend:
        return "high"
    if modern:
        return "medium"
    return "low"


def _infrastructure_level(micro: bool, infra: bool) -> str:
    if micro:
        return "high"
    if infra:
        return "medium"
    return "low"


def calculate_complexity(technologies: Sequence[DetectedTechnology]) -> ComplexityResult:
    """Score 1..10 where higher means harder to rebuild."""
    names = _names(technologies)
    no_code = _has_any(names, NO_CODE_PLATFORMS)
    modern = _has_any(names, MODERN_FRAMEWORKS)
    backend = _has_any(names, COMPLEX_BACKEND)
    micro = _has_any(names, MICROSERVICES)
    infra = _has_any(names, CUSTOM_INFRA)

    score = 5
    if no_code:
        score -= 3
    if modern:
        score += 1
    if backend:
        score += 2
    if micro:
        score += 2
    if infra:
        score += 1

    return ComplexityResult(
        score=max(1, min(10, score)),
        factors=ComplexityFactors(
            custom_code=not no_code and (modern or backend),
            framework_complexity=_framework_level(no_code, modern, backend),
            infrastructure_complexity=_infrastructure_level(micro, infra),
        ),
    )


def _layers_for(tech: DetectedTechnology, kb: TechnologyKnowledgeBase) -> set[str]:
    if _has_any([tech.name], MICROSERVICES):
        return {"backend", "infrastructure"}
    if _has_any([tech.name], NO_CODE_PLATFORMS):
        return {"frontend"}
    profile = kb.get(tech.name)
    if profile is not None:
        for fragment, layer in _KB_LAYERS:
            if fragment in profile.category:
                return {layer}
    return {_DETECTED_LAYERS[c.lower()] for c in tech.categories if c.lower() in _DETECTED_LAYERS}


def _layer_points(layer: str, tech: DetectedTechnology, kb: TechnologyKnowledgeBase) -> int:
    if _has_any([tech.name], NO_CODE_PLATFORMS):
        return 1
    if layer == "backend" and _has_any([tech.name], MICROSERVICES):
        return LAYER_MAX["backend"]
    if layer == "infrastructure" and _has_any([tech.name], MICROSERVICES):
        return LAYER_MAX["infrastructure"]
    if layer == "backend" and _has_any([tech.name], COMPLEX_BACKEND):
        return 3
    profile = kb.get(tech.name) or kb.fallback_profile(tech.name)
    return _DIFFICULTY_POINTS[layer].get(profile.difficulty, 2)


def _explain(score: int, breakdown: dict[str, LayerScore], no_code: bool,
             count: int, licensing: bool) -> str:
    if score <= 3:
        level = "Low"
    elif score <= 6:
        level = "Moderate"
    else:
        level = "High"
    parts = [f"{level} technical complexity ({score}/10)."]
    if no_code:
        parts.append("The site is built on a no-code platform, so most of it can be "
                     "reproduced without custom development.")
    layers = [f"{name} {ls.score}/{ls.max} ({', '.join(ls.technologies)})"
              for name, ls in breakdown.items() if ls.technologies]
    if layers:
        parts.append("Layer breakdown: " + "; ".join(layers) + ".")
    else:
        parts.append("No frontend, backend or infrastructure technologies were identified.")
    if count > 10:
        parts.append(f"{count} technologies in use adds integration overhead.")
    if licensing:
        parts.append("Commercially licensed components may add cost and vendor lock-in.")
    return " ".join(parts)


def calculate_enhanced_complexity(
    technologies: Sequence[DetectedTechnology],
    kb: TechnologyKnowledgeBase | None = None,
) -> EnhancedComplexityResult:
    kb = kb or knowledge_base
    basic = calculate_complexity(technologies)

    members: dict[str, list[str]] = {layer: [] for layer in LAYER_MAX}
    points: dict[str, int] = {layer: 0 for layer in LAYER_MAX}
    for tech in technologies:
        for layer in _layers_for(tech, kb):
            if tech.name not in members[layer]:
                members[layer].append(tech.name)
            points[layer] = max(points[layer], _layer_points(layer, tech, kb))

    breakdown = {
        layer: LayerScore(score=min(points[layer], cap), max=cap, technologies=members[layer])
        for layer, cap in LAYER_MAX.items()
    }

    count = len(technologies)
    bonus = 2 if count > 20 else 1 if count > 10 else 0
    placed = any(ls.technologies for ls in breakdown.values())
    layered = sum(ls.score for ls in breakdown.values()) if placed else NEUTRAL_COMPLEXITY
    score = max(1, min(10, layered + bonus))
    licensing = _has_any(_names(technologies), COMMERCIAL_LICENSED)
    no_code = _has_any(_names(technologies), NO_CODE_PLATFORMS)

    return EnhancedComplexityResult(
        score=score,
        breakdown=ComplexityBreakdown(**breakdown),
        factors=EnhancedComplexityFactors(
            **basic.factors.model_dump(),
            technology_count=count,
            licensing_complexity=licensing,
        ),
        explanation=_explain(score, breakdown, no_code, count, licensing),
    )
