"""Worker backend implementations."""

from taskfleet.orchestrator.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from taskfleet.orchestrator.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
]
