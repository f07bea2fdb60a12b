"""Orchestration sessions and graph templates."""

from portal_core.orchestration.session import OrchestrationSession, SessionStatus
from portal_core.orchestration.templates import (
    TEMPLATES,
    GraphBuilder,
    build_template,
    graph_from_plan,
)

__all__ = [
    "OrchestrationSession",
    "SessionStatus",
    "TEMPLATES",
    "GraphBuilder",
    "build_template",
    "graph_from_plan",
]
