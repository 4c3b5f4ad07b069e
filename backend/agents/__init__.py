"""Agent graph for FormPilot."""

from .form_agent import build_form_agent_graph, describe_form, route_after_agent

__all__ = ["build_form_agent_graph", "describe_form", "route_after_agent"]
