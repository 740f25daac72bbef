"""Turn one free-text request into a dependency-ordered task graph."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from taskfleet.orchestrator.models import (
    ExecutionGraph,
    QueryIntent,
    TaskCategory,
    TaskComplexity,
    TaskMetadata,
    TaskSpec,
)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_TASK_PRIORITY = 5

_WORD_PATTERN = re.compile(r"[a-z0-9]+")

_INTENT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("build", re.compile(r"\b(?:build|create|implement|add|develop)")),
    ("fix", re.compile(r"\b(?:fix|debug|resolve|repair)")),
    ("test", re.compile(r"\b(?:test|verify|validate|check)")),
    ("optimize", re.compile(r"\b(?:optimi[sz]e|improve|enhance|performance)")),
    ("document", re.compile(r"\b(?:document|explain|comment|readme)")),
    ("deploy", re.compile(r"\b(?:deploy|release|publish|production)")),
)

_COMPLEXITY_PATTERNS: tuple[tuple[TaskComplexity, re.Pattern[str]], ...] = (
    (TaskComplexity.SIMPLE, re.compile(r"\b(?:simple|basic|quick|small)")),
    (TaskComplexity.MEDIUM, re.compile(r"\b(?:feature|component|service)")),
    (TaskComplexity.HIGH, re.compile(r"\b(?:system|architecture|complex|enterprise)")),
    (TaskComplexity.CRITICAL, re.compile(r"\b(?:urgent|critical|production|security)")),
)

_FIX_AGENT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("frontend", "ui", "component"), "frontend"),
    (("backend", "api", "server"), "backend"),
    (("security",), "security"),
    (("deploy", "infrastructure"), "devops"),
)


@dataclass(slots=True, frozen=True)
class QueryAnalysis:
    query: str
    intent: QueryIntent
    complexity: TaskComplexity
    keywords: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class _Template:
    suffix: str
    title: str
    description: str
    agent_type: str
    category: TaskCategory
    estimated_minutes: int
    depends_on: tuple[str, ...]
    tools: tuple[str, ...]
    expected_outputs: tuple[str, ...]
    complexity: TaskComplexity | None = None


class QueryDecomposer:
    """Keyword-driven planner emitting a fixed task template per intent."""

    def __init__(
        self,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        self.max_concurrency = max_concurrency
        self._id_factory = id_factory or (lambda: f"task-{uuid4().hex[:8]}")

    def analyze(self, query: str) -> QueryAnalysis:
        normalized = query.strip().lower()
        return QueryAnalysis(
            query=query.strip(),
            intent=_detect_intent(normalized),
            complexity=_detect_complexity(normalized),
            keywords=tuple(dict.fromkeys(_WORD_PATTERN.findall(normalized))),
        )

    def decompose(self, query: str) -> ExecutionGraph:
        """Build the execution graph for one request. Never returns zero tasks."""

        analysis = self.analyze(query)
        base_id = self._id_factory()
        nodes = [
            _materialize(template, base_id=base_id, analysis=analysis)
            for template in _templates_for(analysis)
        ]
        independent = [node for node in nodes if not node.dependencies]
        return ExecutionGraph(
            query=analysis.query,
            intent=analysis.intent,
            complexity=analysis.complexity,
            nodes=nodes,
            total_estimated_minutes=sum(node.metadata.estimated_minutes for node in nodes),
            max_concurrency=min(len(independent), self.max_concurrency),
            parallelizable=len(independent) > 1,
            critical_path=[node.task_id for node in nodes if node.dependencies],
        )


def _detect_intent(normalized: str) -> QueryIntent:
    for name, pattern in _INTENT_PATTERNS:
        if pattern.search(normalized):
            if name in {"build", "fix", "test"}:
                return QueryIntent(name)
            return QueryIntent.OTHER
    return QueryIntent.OTHER


def _detect_complexity(normalized: str) -> TaskComplexity:
    for complexity, pattern in _COMPLEXITY_PATTERNS:
        if pattern.search(normalized):
            return complexity
    return TaskComplexity.MEDIUM


def _select_fix_agent(keywords: tuple[str, ...]) -> str:
    words = set(keywords)
    for markers, agent_type in _FIX_AGENT_RULES:
        if any(marker in words or f"{marker}s" in words for marker in markers):
            return agent_type
    return "backend"


def _templates_for(analysis: QueryAnalysis) -> list[_Template]:
    query = analysis.query or "unspecified request"
    if analysis.intent is QueryIntent.BUILD:
        return [
            _Template(
                suffix="architect",
                title="System Architecture Planning",
                description=f"Analyze requirements and design system architecture for: {query}",
                agent_type="architect",
                category=TaskCategory.ANALYSIS,
                estimated_minutes=10,
                depends_on=(),
                tools=("system-design", "documentation"),
                expected_outputs=("Architecture diagram", "Technical specifications"),
                complexity=TaskComplexity.MEDIUM,
            ),
            _Template(
                suffix="backend",
                title="Backend Implementation",
                description=f"Implement backend services and APIs for: {query}",
                agent_type="backend",
                category=TaskCategory.IMPLEMENTATION,
                estimated_minutes=20,
                depends_on=("architect",),
                tools=("python", "database", "api"),
                expected_outputs=("API endpoints", "Database schemas", "Service logic"),
            ),
            _Template(
                suffix="frontend",
                title="Frontend Implementation",
                description=f"Create user interface components for: {query}",
                agent_type="frontend",
                category=TaskCategory.IMPLEMENTATION,
                estimated_minutes=15,
                depends_on=("architect",),
                tools=("react", "typescript", "css"),
                expected_outputs=("UI components", "State management", "User workflows"),
            ),
            _Template(
                suffix="tester",
                title="Quality Assurance Testing",
                description=f"Test the implemented feature: {query}",
                agent_type="tester",
                category=TaskCategory.TESTING,
                estimated_minutes=10,
                depends_on=("backend", "frontend"),
                tools=("pytest", "playwright"),
                expected_outputs=("Unit tests", "Integration tests", "Test reports"),
                complexity=TaskComplexity.MEDIUM,
            ),
        ]
    if analysis.intent is QueryIntent.FIX:
        return [
            _Template(
                suffix="analyze",
                title="Problem Analysis",
                description=f"Analyze and identify root cause of: {query}",
                agent_type="researcher",
                category=TaskCategory.ANALYSIS,
                estimated_minutes=8,
                depends_on=(),
                tools=("debugging", "log-analysis", "code-review"),
                expected_outputs=("Problem diagnosis", "Root cause analysis", "Fix strategy"),
                complexity=TaskComplexity.MEDIUM,
            ),
            _Template(
                suffix="implement",
                title="Fix Implementation",
                description=f"Implement solution for: {query}",
                agent_type=_select_fix_agent(analysis.keywords),
                category=TaskCategory.IMPLEMENTATION,
                estimated_minutes=15,
                depends_on=("analyze",),
                tools=("code-editor", "testing", "debugging"),
                expected_outputs=("Code fixes", "Updated tests", "Validation results"),
            ),
            _Template(
                suffix="verify",
                title="Fix Verification",
                description=f"Verify fix resolves: {query}",
                agent_type="tester",
                category=TaskCategory.TESTING,
                estimated_minutes=5,
                depends_on=("implement",),
                tools=("testing", "validation"),
                expected_outputs=("Verification tests", "Fix confirmation"),
                complexity=TaskComplexity.SIMPLE,
            ),
        ]
    if analysis.intent is QueryIntent.TEST:
        return [
            _Template(
                suffix="test-plan",
                title="Test Planning",
                description=f"Create comprehensive test plan for: {query}",
                agent_type="tester",
                category=TaskCategory.TESTING,
                estimated_minutes=12,
                depends_on=(),
                tools=("test-planning", "coverage-analysis"),
                expected_outputs=("Test plan", "Test cases", "Coverage requirements"),
                complexity=TaskComplexity.MEDIUM,
            ),
        ]
    return [
        _Template(
            suffix="research",
            title="Research and Analysis",
            description=f"Research and analyze: {query}",
            agent_type="researcher",
            category=TaskCategory.ANALYSIS,
            estimated_minutes=10,
            depends_on=(),
            tools=("research", "documentation"),
            expected_outputs=("Research findings", "Recommendations"),
        ),
    ]


def _materialize(template: _Template, *, base_id: str, analysis: QueryAnalysis) -> TaskSpec:
    return TaskSpec(
        task_id=f"{base_id}-{template.suffix}",
        title=template.title,
        description=template.description,
        agent_type=template.agent_type,
        dependencies=tuple(f"{base_id}-{suffix}" for suffix in template.depends_on),
        priority=DEFAULT_TASK_PRIORITY,
        metadata=TaskMetadata(
            category=template.category,
            complexity=template.complexity or analysis.complexity,
            estimated_minutes=template.estimated_minutes,
            tools=template.tools,
            expected_outputs=template.expected_outputs,
            extras={"intent": analysis.intent.value, "query": analysis.query},
        ),
    )
