"""Document category inference.

Ordered rule table: the first rule with a matching URL or title keyword wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from regintel.ingestion.types import Category


@dataclass(frozen=True)
class ClassificationRule:
    category: Category
    url_patterns: Tuple[str, ...] = ()
    title_patterns: Tuple[str, ...] = ()

    def matches(self, lower_url: str, lower_title: str) -> bool:
        return any(p in lower_url for p in self.url_patterns) or any(p in lower_title for p in self.title_patterns)


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(Category.GUIDANCE, ("guidance",), ("guidance",)),
    ClassificationRule(Category.WARNING_LETTER, ("warning-letter", "warningletters"), ("warning letter",)),
    ClassificationRule(Category.UNTITLED_LETTER, ("untitled-letter",), ("untitled letter",)),
    ClassificationRule(Category.MEETING, ("meeting",), ("meeting",)),
    ClassificationRule(Category.APPROVAL, ("approval",), ("approval",)),
)

DEFAULT_CATEGORY = Category.PRESS


def classify(
    url: str,
    title: str,
    *,
    rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES,
    default: Category = DEFAULT_CATEGORY,
) -> Category:
    lower_url = (url or "").lower()
    lower_title = (title or "").lower()
    for rule in rules:
        if rule.matches(lower_url, lower_title):
            return rule.category
    return default


def resolve_category(url: str, title: str, explicit: Optional[Category] = None) -> Category:
    """Caller-supplied category wins; otherwise run the rule table."""
    if explicit is not None:
        return explicit
    return classify(url, title)
