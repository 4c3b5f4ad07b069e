"""Agent tools for FormPilot."""

from .form_tools import FORM_TOOLS, FORM_TOOLS_BY_NAME, create_form_tool, run_form_tool

__all__ = [
    "FORM_TOOLS",
    "FORM_TOOLS_BY_NAME",
    "create_form_tool",
    "run_form_tool",
]
