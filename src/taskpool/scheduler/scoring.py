"""Priority scores, locality groups and timeouts derived from task metadata."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from taskpool.models import TaskCategory, TaskComplexity, TaskMetadata, TaskPriority

CATEGORY_BASE_WEIGHTS: dict[TaskCategory, float] = {
    TaskCategory.SECURITY: 50.0,
    TaskCategory.BUGFIX: 40.0,
    TaskCategory.FEATURE: 30.0,
    TaskCategory.TEST: 25.0,
    TaskCategory.REFACTOR: 25.0,
    TaskCategory.DOCS: 20.0,
    TaskCategory.CHORE: 15.0,
}
PRIORITY_MULTIPLIERS: dict[TaskPriority, float] = {
    TaskPriority.CRITICAL: 4.0,
    TaskPriority.HIGH: 3.0,
    TaskPriority.MEDIUM: 2.0,
    TaskPriority.LOW: 1.0,
}
COMPLEXITY_TIMEOUT_MULTIPLIERS: dict[TaskComplexity, float] = {
    TaskComplexity.SIMPLE: 0.5,
    TaskComplexity.MODERATE: 1.0,
    TaskComplexity.COMPLEX: 2.0,
}
ROOT_GROUP = "group:root"
_GROUP_PATH_DEPTH = 2

_LABEL_PRIORITIES = {
    "critical": TaskPriority.CRITICAL,
    "urgent": TaskPriority.CRITICAL,
    "high": TaskPriority.HIGH,
    "medium": TaskPriority.MEDIUM,
    "low": TaskPriority.LOW,
}
_LABEL_CATEGORIES = {
    "security": TaskCategory.SECURITY,
    "bug": TaskCategory.BUGFIX,
    "bugfix": TaskCategory.BUGFIX,
    "feature": TaskCategory.FEATURE,
    "enhancement": TaskCategory.FEATURE,
    "refactor": TaskCategory.REFACTOR,
    "docs": TaskCategory.DOCS,
    "documentation": TaskCategory.DOCS,
    "test": TaskCategory.TEST,
    "tests": TaskCategory.TEST,
    "chore": TaskCategory.CHORE,
}
_LABEL_COMPLEXITIES = {
    "simple": TaskComplexity.SIMPLE,
    "easy": TaskComplexity.SIMPLE,
    "moderate": TaskComplexity.MODERATE,
    "complex": TaskComplexity.COMPLEX,
    "hard": TaskComplexity.COMPLEX,
}


def priority_score(metadata: TaskMetadata) -> float:
    """Category base weight scaled by the priority tier multiplier."""

    return CATEGORY_BASE_WEIGHTS[metadata.category] * PRIORITY_MULTIPLIERS[metadata.priority]


def group_id_for_paths(paths: Iterable[str]) -> str | None:
    """Locality group: the most common leading directory pair of the paths.

    File names are dropped before grouping; files at the repository root fall
    into ``group:root``. Ties go to the directory seen first.
    """

    directories: list[str] = []
    for raw in paths:
        parts = [part for part in raw.replace("\\", "/").strip("/").split("/") if part]
        if not parts:
            continue
        if "." in parts[-1]:
            parts = parts[:-1]
        directories.append("/".join(parts[:_GROUP_PATH_DEPTH]) if parts else "")
    if not directories:
        return None

    counts = Counter(directories)
    best = max(counts.values())
    winner = next(directory for directory in directories if counts[directory] == best)
    return f"group:{winner}" if winner else ROOT_GROUP


def timeout_for(metadata: TaskMetadata, base_timeout_seconds: float) -> float:
    return base_timeout_seconds * COMPLEXITY_TIMEOUT_MULTIPLIERS[metadata.complexity]


def metadata_from_labels(
    labels: Iterable[str],
    *,
    affected_paths: Iterable[str] = (),
) -> TaskMetadata:
    """Derive scheduling metadata from issue-style labels.

    Accepts both bare labels (``bug``) and prefixed ones
    (``priority:high``, ``type:bugfix``, ``complexity:simple``).
    """

    normalized = tuple(label.strip().lower() for label in labels if label.strip())
    metadata = TaskMetadata(affected_paths=tuple(affected_paths), labels=normalized)
    for label in normalized:
        prefix, _, value = label.rpartition(":")
        token = value.strip()
        if prefix in {"", "priority", "p"} and token in _LABEL_PRIORITIES:
            metadata.priority = _LABEL_PRIORITIES[token]
        elif prefix in {"", "type", "kind"} and token in _LABEL_CATEGORIES:
            metadata.category = _LABEL_CATEGORIES[token]
        elif prefix in {"", "complexity", "size"} and token in _LABEL_COMPLEXITIES:
            metadata.complexity = _LABEL_COMPLEXITIES[token]
    return metadata
