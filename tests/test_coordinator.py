from __future__ import annotations

import socket
import subprocess
import sys
import threading
from pathlib import Path

import allure
import pytest

from taskfleet.orchestrator.coordinator import (
    INTERRUPTED_ERROR,
    Coordinator,
    agent_owner_alive,
    owner_identity,
)
from taskfleet.orchestrator.errors import ConflictError, NotFoundError, ValidationError
from taskfleet.orchestrator.models import (
    AgentRegistration,
    AgentStatus,
    TaskCompletion,
    TaskMetrics,
    TaskSpec,
    TaskStatus,
)
from taskfleet.orchestrator.repository import OrchestratorDatabase

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Task & Agent Lifecycle"),
]


def _spec(task_id: str, *dependencies: str, agent_type: str = "backend", priority: int = 0):
    return TaskSpec(
        task_id=task_id,
        title=f"Task {task_id}",
        description=f"Do {task_id}",
        agent_type=agent_type,
        dependencies=tuple(dependencies),
        priority=priority,
    )


def _register(coordinator: Coordinator, agent_id: str, agent_type: str = "backend") -> None:
    coordinator.register_agent(AgentRegistration(agent_id=agent_id, agent_type=agent_type))


def _done(duration: float = 1.0, *, success: bool = True, error: str | None = None):
    return TaskCompletion(
        success=success,
        metrics=TaskMetrics(duration_seconds=duration, exit_code=0 if success else 1),
        output="done" if success else "",
        error=error,
    )


def test_dependent_task_becomes_ready_after_completion(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))
    coordinator.enqueue_task(_spec("B", "A"))
    _register(coordinator, "agent1")

    first = coordinator.get_next_task()
    assert first is not None
    assert first.task_id == "A"

    coordinator.assign_task("A", "agent1")
    assert coordinator.get_next_task() is None

    assert coordinator.complete_task("A", _done()) is True
    ready = coordinator.get_next_task()
    assert ready is not None
    assert ready.task_id == "B"


def test_next_task_prefers_priority_then_age(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("low", priority=1))
    coordinator.enqueue_task(_spec("high", priority=9))
    coordinator.enqueue_task(_spec("high-later", priority=9))

    ready = coordinator.get_next_task()

    assert ready is not None
    assert ready.task_id == "high"


def test_next_task_filters_by_agent_type_or_capability(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("ui", agent_type="frontend", priority=5))
    coordinator.enqueue_task(_spec("api", agent_type="backend"))

    backend = coordinator.get_next_task(agent_type="backend")
    multi = coordinator.get_next_task(agent_type="backend", capabilities=("frontend",))

    assert backend is not None
    assert backend.task_id == "api"
    assert multi is not None
    assert multi.task_id == "ui"
    assert coordinator.get_next_task(agent_type="tester") is None


def test_assign_missing_task_raises_not_found_and_leaves_agent_alone(
    coordinator: Coordinator,
) -> None:
    _register(coordinator, "agent1")

    with pytest.raises(NotFoundError):
        coordinator.assign_task("missing-id", "agent1")

    agent = coordinator.list_agents()[0]
    assert agent.status is AgentStatus.IDLE
    assert agent.current_task is None


def test_assign_rejects_unknown_agent_and_blocked_task(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))
    coordinator.enqueue_task(_spec("B", "A"))
    _register(coordinator, "agent1")

    with pytest.raises(NotFoundError):
        coordinator.assign_task("A", "ghost")
    with pytest.raises(ConflictError, match="waiting on dependencies"):
        coordinator.assign_task("B", "agent1")

    assert coordinator.get_task("B").status is TaskStatus.PENDING


def test_busy_agent_cannot_take_a_second_task(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))
    coordinator.enqueue_task(_spec("B"))
    _register(coordinator, "agent1")
    coordinator.assign_task("A", "agent1")

    with pytest.raises(ConflictError, match="not idle"):
        coordinator.assign_task("B", "agent1")


def test_enqueue_validation(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))

    with pytest.raises(ConflictError):
        coordinator.enqueue_task(_spec("A"))
    with pytest.raises(ValidationError, match="unknown"):
        coordinator.enqueue_task(_spec("B", "nope"))
    with pytest.raises(ValidationError, match="itself"):
        coordinator.enqueue_task(_spec("C", "C"))
    with pytest.raises(ValidationError):
        coordinator.enqueue_task(_spec("", "A"))


def test_enqueue_graph_rejects_cycles_and_inserts_in_dependency_order(
    coordinator: Coordinator,
) -> None:
    with pytest.raises(ValidationError, match="cycle"):
        coordinator.enqueue_graph([_spec("x", "y"), _spec("y", "x")])
    assert coordinator.list_tasks() == []

    tasks = coordinator.enqueue_graph([_spec("tester", "backend"), _spec("backend")])

    assert [task.task_id for task in tasks] == ["backend", "tester"]
    assert coordinator.get_task("tester").dependencies == ("backend",)


def test_status_only_moves_forward(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))
    _register(coordinator, "agent1")

    with pytest.raises(ConflictError):
        coordinator.complete_task("A", _done())
    with pytest.raises(ConflictError, match="not assigned"):
        coordinator.start_task("A")

    assert coordinator.assign_task("A", "agent1").status is TaskStatus.ASSIGNED
    assert coordinator.start_task("A").status is TaskStatus.IN_PROGRESS
    assert coordinator.complete_task("A", _done()) is True
    assert coordinator.get_task("A").status is TaskStatus.COMPLETED

    assert coordinator.complete_task("A", _done(success=False, error="late")) is False
    with pytest.raises(ConflictError):
        coordinator.assign_task("A", "agent1")
    assert coordinator.get_task("A").status is TaskStatus.COMPLETED


def test_complete_unknown_task_is_a_no_op(coordinator: Coordinator) -> None:
    assert coordinator.complete_task("ghost", _done()) is False
    assert coordinator.get_status().total_tasks == 0


def test_agent_running_average_matches_arithmetic_mean(coordinator: Coordinator) -> None:
    durations = [2.0, 4.0, 9.0]
    _register(coordinator, "agent1")
    for index, duration in enumerate(durations):
        task_id = f"T{index}"
        coordinator.enqueue_task(_spec(task_id))
        coordinator.assign_task(task_id, "agent1")
        coordinator.complete_task(task_id, _done(duration, success=index != 1, error="x"))

    agent = coordinator.list_agents()[0]

    assert agent.status is AgentStatus.IDLE
    assert agent.current_task is None
    assert agent.metrics.tasks_completed == 3
    assert agent.metrics.average_task_time == pytest.approx(sum(durations) / len(durations))
    assert agent.metrics.success_rate == pytest.approx(2 / 3)


def test_failed_task_cascades_to_pending_dependents(coordinator: Coordinator) -> None:
    coordinator.enqueue_graph([_spec("A"), _spec("B", "A"), _spec("C", "B"), _spec("D")])
    _register(coordinator, "agent1")
    coordinator.assign_task("A", "agent1")

    coordinator.complete_task("A", _done(success=False, error="boom"))

    b_task = coordinator.get_task("B")
    c_task = coordinator.get_task("C")
    assert b_task.status is TaskStatus.FAILED
    assert b_task.result is not None
    assert b_task.result["error"] == "Dependency failed: A"
    assert c_task.status is TaskStatus.FAILED
    assert coordinator.get_task("D").status is TaskStatus.PENDING


def test_update_agent_status_keeps_busy_paired_with_task(coordinator: Coordinator) -> None:
    _register(coordinator, "agent1")

    with pytest.raises(ValidationError):
        coordinator.update_agent_status("agent1", AgentStatus.BUSY)
    with pytest.raises(NotFoundError):
        coordinator.update_agent_status("ghost", AgentStatus.ERROR)

    agent = coordinator.update_agent_status("agent1", AgentStatus.ERROR)
    assert agent.status is AgentStatus.ERROR


def test_concurrent_assign_has_exactly_one_winner(database: OrchestratorDatabase) -> None:
    first = Coordinator(database)
    second = Coordinator(database)
    first.enqueue_task(_spec("race"))
    _register(first, "agent1")
    _register(first, "agent2")

    barrier = threading.Barrier(2)
    results: dict[str, str] = {}

    def _claim(coordinator: Coordinator, agent_id: str) -> None:
        barrier.wait()
        try:
            coordinator.assign_task("race", agent_id)
        except ConflictError:
            results[agent_id] = "conflict"
        else:
            results[agent_id] = "won"

    threads = [
        threading.Thread(target=_claim, args=(first, "agent1")),
        threading.Thread(target=_claim, args=(second, "agent2")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results.values()) == ["conflict", "won"]
    winner = next(agent_id for agent_id, result in results.items() if result == "won")
    loser = "agent2" if winner == "agent1" else "agent1"
    task = first.get_task("race")
    agents = {agent.agent_id: agent for agent in first.list_agents()}
    assert task.assigned_agent == winner
    assert agents[winner].current_task == "race"
    assert agents[winner].status is AgentStatus.BUSY
    assert agents[loser].status is AgentStatus.IDLE
    assert agents[loser].current_task is None


def test_restart_reload_reports_durable_counts(tmp_path: Path) -> None:
    db_path = tmp_path / "restart.db"
    database = OrchestratorDatabase(db_path)
    database.init_schema()
    before_crash = Coordinator(database)
    before_crash.enqueue_graph([_spec("A"), _spec("B", "A"), _spec("C")])
    _register(before_crash, "agent1")
    before_crash.assign_task("A", "agent1")
    before_crash.start_task("A")
    durable = before_crash.get_status()
    database.close()

    reopened = OrchestratorDatabase(db_path)
    reopened.init_schema()
    after_restart = Coordinator(reopened)
    loaded_tasks, loaded_agents = after_restart.load_from_database()

    assert (loaded_tasks, loaded_agents) == (3, 1)
    assert after_restart.get_status().tasks_by_status == durable.tasks_by_status
    assert after_restart.in_flight_count() == 1

    failed = after_restart.fail_interrupted_tasks()

    assert failed == ["A"]
    interrupted = after_restart.get_task("A")
    assert interrupted.status is TaskStatus.FAILED
    assert interrupted.result is not None
    assert interrupted.result["error"] == INTERRUPTED_ERROR
    assert after_restart.get_task("B").status is TaskStatus.FAILED
    assert after_restart.get_task("C").status is TaskStatus.PENDING
    assert after_restart.list_agents()[0].status is AgentStatus.OFFLINE
    assert after_restart.list_agents()[0].current_task is None
    reopened.close()


def test_status_aggregates_from_store(coordinator: Coordinator) -> None:
    coordinator.enqueue_graph([_spec("A"), _spec("B"), _spec("C", agent_type="tester")])
    _register(coordinator, "agent1")
    _register(coordinator, "agent2", agent_type="tester")
    coordinator.assign_task("A", "agent1")
    coordinator.complete_task("A", _done(3.0))
    coordinator.assign_task("B", "agent1")
    coordinator.complete_task("B", _done(5.0))
    coordinator.assign_task("C", "agent2")

    status = coordinator.get_status()

    assert status.tasks_by_status == {"completed": 2, "assigned": 1}
    assert status.in_flight == 1
    assert status.agents_by_status == {"idle": {"backend": 1}, "busy": {"tester": 1}}
    assert status.average_task_duration == pytest.approx(4.0)


def test_cleanup_marks_only_its_session_agents_offline(coordinator: Coordinator) -> None:
    coordinator.register_agent(
        AgentRegistration(agent_id="mine", agent_type="backend", session_id="s1"),
    )
    coordinator.register_agent(
        AgentRegistration(agent_id="theirs", agent_type="backend", session_id="s2"),
    )
    coordinator.enqueue_task(_spec("A"))
    coordinator.assign_task("A", "theirs")

    coordinator.cleanup(session_id="s1")

    agents = {agent.agent_id: agent for agent in coordinator.list_agents()}
    assert agents["mine"].status is AgentStatus.OFFLINE
    assert agents["theirs"].status is AgentStatus.BUSY
    assert agents["theirs"].current_task == "A"
    assert coordinator.get_task("A").status is TaskStatus.ASSIGNED


def _register_owned(
    coordinator: Coordinator,
    agent_id: str,
    *,
    session_id: str,
    metadata: dict[str, object],
) -> None:
    coordinator.register_agent(
        AgentRegistration(
            agent_id=agent_id,
            agent_type="backend",
            session_id=session_id,
            metadata=metadata,
        ),
    )


def test_recovery_fails_only_tasks_of_stopped_sessions(database: OrchestratorDatabase) -> None:
    running = Coordinator(database)
    running.enqueue_graph([_spec("live"), _spec("dead"), _spec("after-dead", "dead")])
    _register_owned(running, "live-agent", session_id="s-live", metadata=owner_identity())
    _register_owned(running, "dead-agent", session_id="s-dead", metadata={})
    running.assign_task("live", "live-agent")
    running.start_task("live")
    running.assign_task("dead", "dead-agent")

    starting = Coordinator(database)
    starting.load_from_database()
    failed = starting.fail_interrupted_tasks(session_id="s-new")

    assert failed == ["dead"]
    assert starting.get_task("live").status is TaskStatus.IN_PROGRESS
    assert starting.get_task("after-dead").status is TaskStatus.FAILED
    agents = {agent.agent_id: agent for agent in starting.list_agents()}
    assert agents["live-agent"].status is AgentStatus.BUSY
    assert agents["live-agent"].current_task == "live"
    assert agents["dead-agent"].status is AgentStatus.OFFLINE

    assert running.complete_task("live", _done()) is True
    assert running.get_task("live").status is TaskStatus.COMPLETED


def test_recovery_leaves_the_callers_own_session_alone(coordinator: Coordinator) -> None:
    coordinator.enqueue_task(_spec("A"))
    _register_owned(coordinator, "agent1", session_id="s1", metadata={})
    coordinator.assign_task("A", "agent1")

    assert coordinator.fail_interrupted_tasks(session_id="s1") == []
    assert coordinator.get_task("A").status is TaskStatus.ASSIGNED


def test_recovery_fails_tasks_whose_agent_went_offline(database: OrchestratorDatabase) -> None:
    coordinator = Coordinator(database, owner_alive=lambda agent: True)
    coordinator.enqueue_task(_spec("A"))
    _register_owned(coordinator, "agent1", session_id="s1", metadata={})
    coordinator.assign_task("A", "agent1")
    coordinator.update_agent_status("agent1", AgentStatus.OFFLINE)

    assert coordinator.fail_interrupted_tasks(session_id="s2") == ["A"]
    assert coordinator.get_task("A").result["error"] == INTERRUPTED_ERROR


def test_owner_liveness_follows_the_registering_process(coordinator: Coordinator) -> None:
    finished = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    finished.wait()
    _register_owned(coordinator, "here", session_id="s1", metadata=owner_identity())
    _register_owned(
        coordinator,
        "gone",
        session_id="s2",
        metadata={"pid": finished.pid, "host": socket.gethostname()},
    )
    _register_owned(
        coordinator,
        "remote",
        session_id="s3",
        metadata={"pid": 1, "host": f"{socket.gethostname()}-elsewhere"},
    )
    _register_owned(coordinator, "anonymous", session_id="s4", metadata={})

    alive = {agent.agent_id: agent_owner_alive(agent) for agent in coordinator.list_agents()}

    assert alive == {"here": True, "gone": False, "remote": True, "anonymous": False}
