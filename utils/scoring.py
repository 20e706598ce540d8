import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Union

from utils.content import PageFacts

TITLE_MIN = 10
TITLE_MAX = 70
THIN_CONTENT_THRESHOLD = 300

ISSUE_MISSING_TITLE = "Missing Title Tag"
ISSUE_TITLE_LENGTH = "Title length suboptimal"
ISSUE_MISSING_DESCRIPTION = "Missing Meta Description"
ISSUE_MISSING_H1 = "Missing H1 Heading"
ISSUE_THIN_CONTENT = "Thin content (< 300 words)"
ISSUE_NO_INTERNAL_LINKS = "No internal links found"


@dataclass
class AuditResult:
    technical_score: int
    content_score: int
    seo_score: int
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _facts_dict(facts: Union[PageFacts, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(facts, PageFacts):
        return facts.to_dict()
    return facts


def calculate_scores(facts: Union[PageFacts, Mapping[str, Any]]) -> AuditResult:
    """Deterministic technical/content scores for one page."""
    data = _facts_dict(facts)
    technical = 100
    content = 100
    issues: List[str] = []

    title = data.get("title") or ""
    if not title:
        technical -= 20
        issues.append(ISSUE_MISSING_TITLE)
    elif len(title) < TITLE_MIN or len(title) > TITLE_MAX:
        technical -= 5
        issues.append(ISSUE_TITLE_LENGTH)

    if not data.get("description"):
        technical -= 10
        issues.append(ISSUE_MISSING_DESCRIPTION)

    if not data.get("h1"):
        content -= 20
        issues.append(ISSUE_MISSING_H1)

    if (data.get("word_count") or 0) < THIN_CONTENT_THRESHOLD:
        content -= 20
        issues.append(ISSUE_THIN_CONTENT)

    links = data.get("links") or {}
    if (links.get("internal") or 0) == 0:
        content -= 10
        issues.append(ISSUE_NO_INTERNAL_LINKS)

    technical = max(0, technical)
    content = max(0, content)
    return AuditResult(
        technical_score=technical,
        content_score=content,
        seo_score=round_half_up((technical + content) / 2),
        issues=issues,
    )
