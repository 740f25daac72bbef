"""Static catalogue of agent types and their declared capabilities."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from taskfleet.orchestrator.errors import ValidationError


@dataclass(slots=True, frozen=True)
class AgentType:
    """One kind of worker the pool can launch."""

    name: str
    capabilities: tuple[str, ...] = ()
    specializations: tuple[str, ...] = ()
    description: str = ""

    @property
    def tags(self) -> tuple[str, ...]:
        """Lower-cased specializations and capabilities used for matching."""

        return tuple(tag.lower() for tag in (*self.specializations, *self.capabilities) if tag)


DEFAULT_AGENT_TYPES = (
    AgentType(
        name="architect",
        capabilities=("system-design", "documentation"),
        specializations=("architecture", "analysis", "platform", "design"),
        description="Plans system structure and interfaces.",
    ),
    AgentType(
        name="backend",
        capabilities=("python", "database", "api"),
        specializations=("backend", "server", "implementation", "services"),
        description="Implements services, storage and APIs.",
    ),
    AgentType(
        name="frontend",
        capabilities=("react", "typescript", "css"),
        specializations=("frontend", "interface", "components", "form", "implementation"),
        description="Implements user interface components.",
    ),
    AgentType(
        name="tester",
        capabilities=("testing", "qa", "validation"),
        specializations=("test", "review", "quality", "audit"),
        description="Writes and runs tests, reviews quality.",
    ),
    AgentType(
        name="researcher",
        capabilities=("investigation", "documentation"),
        specializations=("research", "analysis", "investigate", "debug", "root-cause"),
        description="Investigates problems and gathers context.",
    ),
    AgentType(
        name="security",
        capabilities=("threat-modeling", "audit"),
        specializations=("security", "vulnerability", "auth", "secure-implementation"),
        description="Reviews and fixes security issues.",
    ),
    AgentType(
        name="devops",
        capabilities=("ci", "containers"),
        specializations=("deploy", "infrastructure", "pipeline", "infrastructure-implementation"),
        description="Handles deployment and infrastructure.",
    ),
    AgentType(
        name="assistant",
        capabilities=("general",),
        description="Generic worker used when nothing else matches.",
    ),
)


class AgentRegistry:
    """Read-only lookup of agent types in registration order."""

    def __init__(self, agent_types: tuple[AgentType, ...] | list[AgentType]) -> None:
        self._types: dict[str, AgentType] = {}
        for agent_type in agent_types:
            name = agent_type.name.strip()
            if not name:
                raise ValidationError("Agent type name must not be empty.")
            if name in self._types:
                raise ValidationError(f"Duplicate agent type: {name}")
            self._types[name] = agent_type

    @classmethod
    def default(cls) -> AgentRegistry:
        return cls(DEFAULT_AGENT_TYPES)

    @classmethod
    def from_file(cls, path: Path) -> AgentRegistry:
        """Load a JSON list of ``{"name", "capabilities", "specializations"}`` objects."""

        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ValidationError(f"Cannot read agent catalogue {path}: {error}") from error
        if not isinstance(payload, list):
            raise ValidationError(f"Agent catalogue {path} must be a JSON list.")

        agent_types = []
        for index, item in enumerate(payload):
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ValidationError(f"Agent catalogue entry #{index} needs a string name.")
            agent_types.append(
                AgentType(
                    name=item["name"],
                    capabilities=_string_tuple(item.get("capabilities")),
                    specializations=_string_tuple(item.get("specializations")),
                    description=str(item.get("description", "")),
                ),
            )
        return cls(agent_types)

    def get(self, name: str) -> AgentType | None:
        return self._types.get(name)

    def names(self) -> list[str]:
        return list(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[AgentType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)


def _string_tuple(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValidationError(f"Expected a list of strings, got {value!r}")
    return tuple(str(item) for item in value)
