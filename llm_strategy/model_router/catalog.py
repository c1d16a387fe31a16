"""Task catalog and quality matrix for content-generation routing.

Every task category carries a minimum quality floor and a preferred model
ordering (cheapest first). The quality matrix scores how well each model
performs each category; models without a rating score 0.0 and are never
eligible unless the floor is 0.

Category inference maps a free-text agent type to a category with ordered
keyword rules. The first matching rule wins:

    pitch/PR -> summarization -> SEO -> analysis/reasoning
    -> structured/JSON -> long-form -> short-form (default)

The order is a deliberate tie-break ("seo summary agent" is summarization)
and must stay stable so routing is reproducible.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

import structlog

log = structlog.get_logger(__name__)


class TaskCategory(StrEnum):
    """Coarse classification of requested work."""

    PR_PITCH = "pr-pitch"
    SUMMARIZATION = "summarization"
    SEO = "seo"
    ANALYSIS = "analysis"
    STRUCTURED_JSON = "structured-json"
    LONG_FORM = "long-form"
    SHORT_FORM = "short-form"


@dataclass(frozen=True)
class TaskCatalogEntry:
    """Static routing requirements for one task category.

    Attributes:
        category: Task category
        min_perf: Minimum quality score (0.0-1.0) a model needs for this task
        preferred_models: Model names ordered cheapest first
    """

    category: TaskCategory
    min_perf: float
    preferred_models: tuple[str, ...]

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_perf <= 1.0:
            raise ValueError(f"min_perf must be 0.0-1.0, got {self.min_perf}")


TASK_CATALOG: Mapping[TaskCategory, TaskCatalogEntry] = MappingProxyType(
    {
        TaskCategory.SHORT_FORM: TaskCatalogEntry(
            TaskCategory.SHORT_FORM, 0.60, ("gpt-4o-mini", "claude-3-haiku", "claude-3-sonnet")
        ),
        TaskCategory.LONG_FORM: TaskCatalogEntry(
            TaskCategory.LONG_FORM, 0.75, ("claude-3-sonnet", "gpt-4o", "claude-3-opus")
        ),
        TaskCategory.STRUCTURED_JSON: TaskCatalogEntry(
            TaskCategory.STRUCTURED_JSON, 0.70, ("gpt-4o-mini", "claude-3-haiku", "gpt-4o")
        ),
        TaskCategory.ANALYSIS: TaskCatalogEntry(
            TaskCategory.ANALYSIS, 0.85, ("claude-3-sonnet", "gpt-4o", "claude-3-opus")
        ),
        TaskCategory.SUMMARIZATION: TaskCatalogEntry(
            TaskCategory.SUMMARIZATION, 0.65, ("gpt-4o-mini", "claude-3-haiku", "claude-3-sonnet")
        ),
        TaskCategory.SEO: TaskCatalogEntry(
            TaskCategory.SEO, 0.70, ("gpt-4o-mini", "claude-3-haiku", "claude-3-sonnet")
        ),
        TaskCategory.PR_PITCH: TaskCatalogEntry(
            TaskCategory.PR_PITCH, 0.80, ("claude-3-sonnet", "gpt-4o", "claude-3-opus")
        ),
    }
)

# category -> model -> quality (0.0-1.0). claude-3-5-sonnet is only rated
# where it has been benchmarked.
QUALITY_MATRIX: Mapping[TaskCategory, Mapping[str, float]] = MappingProxyType(
    {
        TaskCategory.SHORT_FORM: {
            "gpt-4o-mini": 0.78,
            "gpt-3.5-turbo": 0.68,
            "claude-3-haiku": 0.74,
            "claude-3-sonnet": 0.85,
            "gpt-4o": 0.88,
            "gpt-4-turbo": 0.86,
            "claude-3-opus": 0.90,
        },
        TaskCategory.LONG_FORM: {
            "gpt-4o-mini": 0.70,
            "gpt-3.5-turbo": 0.58,
            "claude-3-haiku": 0.68,
            "claude-3-sonnet": 0.88,
            "gpt-4o": 0.87,
            "gpt-4-turbo": 0.85,
            "claude-3-opus": 0.94,
        },
        TaskCategory.STRUCTURED_JSON: {
            "gpt-4o-mini": 0.82,
            "gpt-3.5-turbo": 0.70,
            "claude-3-haiku": 0.75,
            "claude-3-sonnet": 0.86,
            "gpt-4o": 0.93,
            "gpt-4-turbo": 0.90,
            "claude-3-opus": 0.90,
            "claude-3-5-sonnet": 0.92,
        },
        TaskCategory.ANALYSIS: {
            "gpt-4o-mini": 0.66,
            "gpt-3.5-turbo": 0.55,
            "claude-3-haiku": 0.62,
            "claude-3-sonnet": 0.86,
            "gpt-4o": 0.90,
            "gpt-4-turbo": 0.89,
            "claude-3-opus": 0.96,
            "claude-3-5-sonnet": 0.93,
        },
        TaskCategory.SUMMARIZATION: {
            "gpt-4o-mini": 0.80,
            "gpt-3.5-turbo": 0.70,
            "claude-3-haiku": 0.78,
            "claude-3-sonnet": 0.88,
            "gpt-4o": 0.90,
            "gpt-4-turbo": 0.88,
            "claude-3-opus": 0.92,
        },
        TaskCategory.SEO: {
            "gpt-4o-mini": 0.76,
            "gpt-3.5-turbo": 0.66,
            "claude-3-haiku": 0.72,
            "claude-3-sonnet": 0.84,
            "gpt-4o": 0.88,
            "gpt-4-turbo": 0.86,
            "claude-3-opus": 0.90,
        },
        TaskCategory.PR_PITCH: {
            "gpt-4o-mini": 0.65,
            "gpt-3.5-turbo": 0.52,
            "claude-3-haiku": 0.60,
            "claude-3-sonnet": 0.92,
            "gpt-4o": 0.88,
            "gpt-4-turbo": 0.78,
            "claude-3-opus": 0.95,
        },
    }
)

# Ordered: first match wins.
_INFERENCE_RULES: tuple[tuple[TaskCategory, re.Pattern[str]], ...] = (
    (TaskCategory.PR_PITCH, re.compile(r"\bpitch|\bpr\b|\bpress\b|journalist|media outreach")),
    (TaskCategory.SUMMARIZATION, re.compile(r"summar|digest|recap|tl;?dr")),
    (TaskCategory.SEO, re.compile(r"\bseo\b|keyword|meta description|serp")),
    (TaskCategory.ANALYSIS, re.compile(r"analy|reason|insight|evaluat|research")),
    (TaskCategory.STRUCTURED_JSON, re.compile(r"json|structured|extract|schema|classif")),
    (TaskCategory.LONG_FORM, re.compile(r"\blong\b|blog|article|whitepaper|newsletter|ebook")),
)


def infer_task_category(agent_type: str | None) -> TaskCategory:
    """Map a free-text agent type to a task category.

    Separators (_, -, /, .) are treated as spaces so "pr_pitch_agent" and
    "pr-pitch" both match the PR rule.
    """
    if not agent_type:
        return TaskCategory.SHORT_FORM

    normalized = re.sub(r"[_\-/.]+", " ", agent_type.lower())
    for category, pattern in _INFERENCE_RULES:
        if pattern.search(normalized):
            log.debug(
                "task_catalog.category_inferred",
                agent_type=agent_type,
                category=category.value,
                matched=pattern.pattern,
            )
            return category
    return TaskCategory.SHORT_FORM


class TaskCatalog:
    """Lookup over task requirements and the quality matrix."""

    def __init__(
        self,
        entries: Mapping[TaskCategory, TaskCatalogEntry] = TASK_CATALOG,
        quality_matrix: Mapping[TaskCategory, Mapping[str, float]] = QUALITY_MATRIX,
    ) -> None:
        self._entries = entries
        self._quality = quality_matrix

    @property
    def categories(self) -> list[TaskCategory]:
        return list(self._entries)

    def get_entry(self, category: TaskCategory | str) -> TaskCatalogEntry:
        """Catalog entry for a category.

        Raises:
            ValueError: If the category is unknown
        """
        task = TaskCategory(category)
        entry = self._entries.get(task)
        if entry is None:
            raise ValueError(f"No catalog entry for task category {task.value!r}")
        return entry

    def quality_for(self, category: TaskCategory | str, model: str) -> float:
        """Quality of a model for a category; 0.0 when unrated."""
        return self._quality.get(TaskCategory(category), {}).get(model, 0.0)

    def meets_performance(
        self,
        category: TaskCategory | str,
        model: str,
        min_perf: float | None = None,
    ) -> bool:
        threshold = self.get_entry(category).min_perf if min_perf is None else min_perf
        return self.quality_for(category, model) >= threshold

    def get_qualified_models(
        self,
        category: TaskCategory | str,
        min_perf: float | None = None,
    ) -> list[tuple[str, float]]:
        """Models at or above the threshold, best quality first."""
        task = TaskCategory(category)
        threshold = self.get_entry(task).min_perf if min_perf is None else min_perf
        qualified = [
            (model, quality)
            for model, quality in self._quality.get(task, {}).items()
            if quality >= threshold
        ]
        qualified.sort(key=lambda item: (-item[1], item[0]))
        return qualified

    def get_preferred_models(
        self,
        category: TaskCategory | str,
        min_perf: float | None = None,
    ) -> list[str]:
        """The category's cost-ordered preference list, filtered by threshold."""
        entry = self.get_entry(category)
        threshold = entry.min_perf if min_perf is None else min_perf
        return [
            model
            for model in entry.preferred_models
            if self.quality_for(entry.category, model) >= threshold
        ]
