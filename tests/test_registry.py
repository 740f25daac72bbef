from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from taskfleet.orchestrator.errors import ValidationError
from taskfleet.orchestrator.registry import AgentRegistry, AgentType

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Agent Catalogue"),
]


def test_default_catalogue_lists_known_types_in_order() -> None:
    registry = AgentRegistry.default()

    assert registry.names() == [
        "architect",
        "backend",
        "frontend",
        "tester",
        "researcher",
        "security",
        "devops",
        "assistant",
    ]
    assert "frontend" in registry
    assert "designer" not in registry
    assert registry.get("designer") is None
    assert len(registry) == 8


def test_tags_combine_specializations_and_capabilities_without_the_name() -> None:
    agent_type = AgentType(name="Mobile", capabilities=("Swift",), specializations=("ios",))

    assert agent_type.tags == ("ios", "swift")


def test_catalogue_loads_from_json(tmp_path: Path) -> None:
    path = tmp_path / "agents.json"
    path.write_text(
        json.dumps(
            [
                {"name": "mobile", "capabilities": ["swift"], "specializations": ["ios"]},
                {"name": "writer", "description": "Docs"},
            ],
        ),
        "utf-8",
    )

    registry = AgentRegistry.from_file(path)

    assert registry.names() == ["mobile", "writer"]
    assert registry.get("mobile").capabilities == ("swift",)
    assert registry.get("writer").description == "Docs"


@pytest.mark.parametrize(
    "payload",
    ['{"name": "x"}', "[{\"capabilities\": []}]", "not json"],
)
def test_malformed_catalogue_is_rejected(tmp_path: Path, payload: str) -> None:
    path = tmp_path / "agents.json"
    path.write_text(payload, "utf-8")

    with pytest.raises(ValidationError):
        AgentRegistry.from_file(path)


def test_duplicate_names_are_rejected() -> None:
    with pytest.raises(ValidationError, match="Duplicate agent type"):
        AgentRegistry([AgentType(name="a"), AgentType(name="a")])
