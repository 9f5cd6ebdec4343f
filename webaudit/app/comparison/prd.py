"""
PRD parsing and comparison.

Parses a Markdown product requirements document into features and
compares them against the routes and endpoints discovered by earlier
stages using keyword matching. This is a deterministic approximation:
a 'missing' verdict means no discovered route or endpoint shares
enough vocabulary with the feature, not that the feature is absent.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.+)$")
FEATURE_KEYWORDS = ("feature", "functionality", "capability", "module", "component")
STOP_WORDS = frozenset(
    {
        "the", "and", "for", "with", "this", "that", "from", "have", "will",
        "should", "must", "shall", "can", "could", "would", "user", "users",
        "system", "application", "feature", "functionality",
    }
)
MATCH_THRESHOLD = 0.3


class FeaturePriority(str, Enum):
    MUST_HAVE = "must-have"
    SHOULD_HAVE = "should-have"
    NICE_TO_HAVE = "nice-to-have"
    UNKNOWN = "unknown"


class FeatureStatus(str, Enum):
    IMPLEMENTED = "implemented"
    PARTIAL = "partial"
    MISSING = "missing"


class PrdFeature(BaseModel):
    id: str
    name: str
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    priority: FeaturePriority = FeaturePriority.UNKNOWN

    model_config = ConfigDict(frozen=True, extra="forbid")


class ParsedPrd(BaseModel):
    source_file: str
    title: str
    features: List[PrdFeature] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class FeatureComparison(BaseModel):
    feature_id: str
    feature_name: str
    priority: FeaturePriority
    status: FeatureStatus
    requirements_met: int
    requirements_total: int
    missing_requirements: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class PrdComparison(BaseModel):
    prd_source: str
    compared_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_features: int
    implemented: int
    partial: int
    missing: int
    coverage_percent: int
    feature_results: List[FeatureComparison] = Field(default_factory=list)
    unmatched_routes: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _feature_id(heading: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", heading.lower()).strip("-")[:50]


def _infer_priority(content: str) -> FeaturePriority:
    lower = content.lower()
    if "must have" in lower or "must-have" in lower or "p0" in lower or "critical" in lower:
        return FeaturePriority.MUST_HAVE
    if "should have" in lower or "should-have" in lower or "p1" in lower or "important" in lower:
        return FeaturePriority.SHOULD_HAVE
    if "nice to have" in lower or "nice-to-have" in lower or "p2" in lower or "optional" in lower:
        return FeaturePriority.NICE_TO_HAVE
    return FeaturePriority.UNKNOWN


def parse_prd(text: str, source_file: str = "<memory>") -> ParsedPrd:
    title = ""
    sections: List[tuple[str, int, List[str]]] = []

    for line in text.splitlines():
        heading = HEADING_RE.match(line)
        if heading:
            level, name = len(heading.group(1)), heading.group(2).strip()
            if level == 1 and not title:
                title = name
            sections.append((name, level, []))
        elif sections:
            sections[-1][2].append(line)

    features: List[PrdFeature] = []
    for name, level, body in sections:
        is_feature = level == 2 or any(kw in name.lower() for kw in FEATURE_KEYWORDS)
        requirements = [m.group(1).strip() for m in map(BULLET_RE.match, body) if m]
        if not is_feature or not requirements:
            continue
        paragraphs = [line.strip() for line in body if line.strip() and not BULLET_RE.match(line)]
        features.append(
            PrdFeature(
                id=_feature_id(name),
                name=name,
                description=paragraphs[0] if paragraphs else "",
                requirements=requirements,
                priority=_infer_priority(name + "\n" + "\n".join(body)),
            )
        )

    return ParsedPrd(source_file=source_file, title=title or "Untitled PRD", features=features)


def load_prd(path: Path) -> ParsedPrd:
    return parse_prd(path.read_text(encoding="utf-8"), source_file=str(path))


# ----------------------------------------------------------------------
# Comparison
# ----------------------------------------------------------------------

def extract_keywords(name: str, description: str) -> List[str]:
    words = re.split(r"\W+", f"{name} {description}".lower())
    seen: List[str] = []
    for word in words:
        if len(word) > 3 and word not in STOP_WORDS and word not in seen:
            seen.append(word)
    return seen


def keywords_match(keywords: List[str], text: str) -> bool:
    if not keywords:
        return False
    lower = text.lower()
    hits = sum(1 for kw in keywords if kw in lower)
    return hits >= max(1, math.ceil(len(keywords) * MATCH_THRESHOLD))


def compare_feature(feature: PrdFeature, candidates: Iterable[str]) -> FeatureComparison:
    keywords = extract_keywords(feature.name, feature.description)
    evidence = [c for c in candidates if keywords_match(keywords, c)]
    total = len(feature.requirements)

    if evidence and len(evidence) >= total:
        status = FeatureStatus.IMPLEMENTED
    elif evidence:
        status = FeatureStatus.PARTIAL
    else:
        status = FeatureStatus.MISSING

    return FeatureComparison(
        feature_id=feature.id,
        feature_name=feature.name,
        priority=feature.priority,
        status=status,
        requirements_met=min(len(evidence), total),
        requirements_total=total,
        missing_requirements=feature.requirements[len(evidence):],
        evidence=evidence,
    )


def compare_prd(
    prd: ParsedPrd,
    routes: Iterable[str],
    endpoints: Optional[Iterable[str]] = None,
) -> PrdComparison:
    route_list = list(dict.fromkeys(routes))
    candidates = route_list + [e for e in (endpoints or []) if e not in route_list]

    results = [compare_feature(feature, candidates) for feature in prd.features]
    matched = {location for result in results for location in result.evidence}

    implemented = sum(1 for r in results if r.status == FeatureStatus.IMPLEMENTED)
    partial = sum(1 for r in results if r.status == FeatureStatus.PARTIAL)
    missing = sum(1 for r in results if r.status == FeatureStatus.MISSING)
    total = len(results)

    return PrdComparison(
        prd_source=prd.source_file,
        total_features=total,
        implemented=implemented,
        partial=partial,
        missing=missing,
        coverage_percent=round((implemented + partial * 0.5) / total * 100) if total else 100,
        feature_results=results,
        unmatched_routes=[r for r in route_list if r not in matched],
    )
