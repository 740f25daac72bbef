"""Capability scoring that maps tasks to agent types."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from taskfleet.orchestrator.errors import ValidationError
from taskfleet.orchestrator.models import TaskCategory, TaskComplexity, TaskSpec
from taskfleet.orchestrator.registry import AgentRegistry, AgentType

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS: dict[TaskCategory, tuple[str, ...]] = {
    TaskCategory.ANALYSIS: ("analysis", "investigate", "research", "architect"),
    TaskCategory.IMPLEMENTATION: ("implement", "build", "develop", "code", "fullstack"),
    TaskCategory.REVIEW: ("review", "test", "audit", "quality"),
    TaskCategory.TESTING: ("test", "qa", "validation"),
    TaskCategory.DOCUMENTATION: ("docs", "documentation", "writing"),
}

STOP_WORDS = frozenset({"this", "that", "with", "from", "they", "have", "been"})

CATEGORY_MATCH_SCORE = 0.3
KEYWORD_MATCH_SCORE = 0.2
MAX_WORKLOAD_PENALTY = 0.5

_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9_\-]*")


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    agent_type: str
    score: float
    fallback: bool = False


def description_keywords(text: str) -> list[str]:
    """Words longer than three characters, minus stop words, in first-seen order."""

    seen: dict[str, None] = {}
    for word in _WORD_PATTERN.findall(text.lower()):
        if len(word) > 3 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def workload_penalty(workload_minutes: float) -> float:
    return min(max(0.0, workload_minutes) / 60.0 * 0.2, MAX_WORKLOAD_PENALTY)


def score_agent_type(
    spec: TaskSpec,
    agent_type: AgentType,
    *,
    workload_minutes: float = 0.0,
) -> float:
    """Capability match score for ``agent_type`` minus its current workload penalty.

    Every category keyword and every description keyword found in the type's
    tags adds to the score. The sum is capped at 1.0 before the penalty.
    """

    tags = agent_type.tags

    def _matches(keyword: str) -> bool:
        return any(keyword in tag for tag in tags)

    category_keywords = CATEGORY_KEYWORDS[spec.metadata.category]
    score = CATEGORY_MATCH_SCORE * sum(1 for keyword in category_keywords if _matches(keyword))

    keywords = description_keywords(spec.description)
    score += KEYWORD_MATCH_SCORE * sum(1 for keyword in keywords if _matches(keyword))

    name = agent_type.name.lower()
    complexity = spec.metadata.complexity
    if complexity is TaskComplexity.SIMPLE and ("test" in name or "review" in name):
        score += 0.1
    elif complexity is TaskComplexity.MEDIUM and ("fullstack" in name or "developer" in name):
        score += 0.1
    elif complexity in {TaskComplexity.HIGH, TaskComplexity.CRITICAL} and (
        "architect" in name or "platform" in name
    ):
        score += 0.2

    return min(score, 1.0) - workload_penalty(workload_minutes)


class CapabilityRouter:
    """Pick the best-scoring agent type, with a configurable fallback.

    Fallback policies apply when no type scores above zero:

    - ``generic``: use ``fallback_agent_type``; when it is not registered, use
      the task's declared type if that one is.
    - ``task_type``: use the task's declared type; when it is not registered,
      use ``fallback_agent_type``.
    - ``error``: refuse to route.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        fallback_policy: str = "generic",
        fallback_agent_type: str = "assistant",
    ) -> None:
        if fallback_policy not in {"generic", "task_type", "error"}:
            raise ValueError(f"Unsupported fallback policy: {fallback_policy}")
        self.registry = registry
        self.fallback_policy = fallback_policy
        self.fallback_agent_type = fallback_agent_type

    def choose(
        self,
        spec: TaskSpec,
        *,
        workloads: Mapping[str, float] | None = None,
    ) -> RoutingDecision:
        workloads = workloads or {}
        best: RoutingDecision | None = None
        for agent_type in self.registry:
            score = score_agent_type(
                spec,
                agent_type,
                workload_minutes=workloads.get(agent_type.name, 0.0),
            )
            if best is None or score > best.score:
                best = RoutingDecision(agent_type=agent_type.name, score=score)

        if best is not None and best.score > 0:
            return best
        return self._fallback(spec)

    def _fallback(self, spec: TaskSpec) -> RoutingDecision:
        if self.fallback_policy == "error":
            raise ValidationError(f"No agent type matches task {spec.task_id}.")

        if self.fallback_policy == "generic":
            candidates = (self.fallback_agent_type, spec.agent_type)
        else:
            candidates = (spec.agent_type, self.fallback_agent_type)
        for candidate in candidates:
            if candidate in self.registry:
                logger.debug("Task %s routed to fallback type %s", spec.task_id, candidate)
                return RoutingDecision(agent_type=candidate, score=0.0, fallback=True)
        raise ValidationError(
            f"No agent type matches task {spec.task_id} and no fallback type is registered "
            f"(known types: {', '.join(self.registry.names())}).",
        )
