"""
Form Tools — the LangChain tools the form-building agent can call.

Each tool's argument schema is the command's pydantic argument model, so a
tool call the model emits is exactly a command invocation. Executing a tool
on the server never touches the document: edits are applied only after the
user confirms the batch. The tool result is a short summary the model can
read back on its next step.
"""

import json
import logging
from typing import Any, Callable, Dict, List

from langchain_core.messages import ToolMessage
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ValidationError

from errors import CommandValidationError
from models.commands import COMMAND_ARGS, CommandName, parse_command

logger = logging.getLogger(__name__)


_DESCRIPTIONS: Dict[CommandName, str] = {
    CommandName.ADD_FIELDS: (
        "Add one or more new fields to the form. Use insertAfterFieldId to place "
        "them right after an existing field, or sectionId to append them to a "
        "specific section. Without either, fields go to the current section."
    ),
    CommandName.DELETE_FIELDS: "Delete one or more fields from the form by their IDs.",
    CommandName.UPDATE_FIELD: (
        "Update properties of an existing field. Only include the attributes "
        "that change; everything else is kept."
    ),
    CommandName.REORDER_FIELDS: (
        "Reorder the fields of one section. Provide every field ID of that "
        "section in the new order."
    ),
    CommandName.REPLACE_FORM: (
        "Replace the entire form with a new structure. Use this to build a form "
        "from scratch or for a complete redesign. Each section has a title and "
        "its fields."
    ),
    CommandName.ADD_SECTION: (
        "Add a new section (page) to the form, optionally with initial fields. "
        "Appended at the end unless insertAfterSectionId is given."
    ),
    CommandName.UPDATE_SECTION: "Update the title, description or title visibility of a section.",
    CommandName.DELETE_SECTION: "Delete a section and all of its fields.",
    CommandName.REORDER_SECTIONS: "Reorder the sections of the form. Provide all section IDs in the new order.",
    CommandName.ADD_ELEMENT_TO_ROW: (
        "Place a new field side by side with an existing one, to its left or "
        "right. A row holds at most two fields."
    ),
    CommandName.UPDATE_FORM_STYLE: (
        "Change how the form is presented: 'classic' shows every section on one "
        "scrollable page, 'stepped' shows one section at a time."
    ),
    CommandName.UPDATE_DESIGN_SETTINGS: (
        "Update the visual design: colors, font family, button corner radius, "
        "question spacing and whether section titles are shown. Only include "
        "the settings that change."
    ),
    CommandName.UPDATE_THANK_YOU_PAGE: (
        "Update the confirmation page shown after submission: title, description, "
        "confetti and the optional button. Only include the settings that change."
    ),
}


def _plain(value: Any) -> Any:
    """Turn validated tool input back into JSON-shaped data."""
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True)
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value


def _summarize(name: CommandName, args: Any) -> dict:
    summary: Dict[str, Any] = {"success": True, "action": name.value}

    if name in (CommandName.ADD_FIELDS, CommandName.GENERATE_FORM):
        summary["count"] = len(args.elements)
        summary["message"] = f"Added {len(args.elements)} field(s)"
    elif name == CommandName.DELETE_FIELDS:
        summary["fieldIds"] = list(args.fieldIds)
        summary["message"] = f"Deleted {len(args.fieldIds)} field(s)"
    elif name == CommandName.UPDATE_FIELD:
        summary["fieldId"] = args.fieldId
        summary["message"] = f"Updated field {args.fieldId}"
    elif name == CommandName.REORDER_FIELDS:
        summary["sectionId"] = args.sectionId
        summary["message"] = f"Reordered {len(args.fieldIds)} field(s)"
    elif name == CommandName.REPLACE_FORM:
        fields = sum(len(section.elements) for section in args.sections)
        summary["sectionCount"] = len(args.sections)
        summary["fieldCount"] = fields
        summary["message"] = f"Created form with {len(args.sections)} section(s) and {fields} field(s)"
    elif name == CommandName.ADD_SECTION:
        summary["title"] = args.title
        summary["message"] = f"Added section '{args.title}'"
    elif name == CommandName.UPDATE_SECTION:
        summary["sectionId"] = args.sectionId
        summary["message"] = f"Updated section {args.sectionId}"
    elif name == CommandName.DELETE_SECTION:
        summary["sectionId"] = args.sectionId
        summary["message"] = f"Deleted section {args.sectionId}"
    elif name == CommandName.REORDER_SECTIONS:
        summary["message"] = f"Reordered {len(args.sectionIds)} section(s)"
    elif name == CommandName.ADD_ELEMENT_TO_ROW:
        summary["targetElementId"] = args.targetElementId
        summary["position"] = args.position
        summary["message"] = f"Placed a {args.element.type.value} {args.position} of {args.targetElementId}"
    elif name == CommandName.UPDATE_FORM_STYLE:
        summary["style"] = args.style.value
        summary["message"] = f"Form style set to {args.style.value}"
    elif name == CommandName.UPDATE_DESIGN_SETTINGS:
        summary["settings"] = args.settings.model_dump(exclude_none=True)
        summary["message"] = "Updated design settings"
    elif name == CommandName.UPDATE_THANK_YOU_PAGE:
        summary["settings"] = args.settings.model_dump(exclude_none=True)
        summary["message"] = "Updated thank-you page"
    return summary


def _make_tool_func(name: CommandName) -> Callable[..., dict]:
    def _run(**kwargs: Any) -> dict:
        command = parse_command(name.value, _plain(kwargs))
        return _summarize(name, command.args)

    _run.__name__ = name.value
    return _run


def create_form_tool(name: CommandName) -> StructuredTool:
    """Build the LangChain tool for one command."""
    return StructuredTool.from_function(
        func=_make_tool_func(name),
        name=name.value,
        description=_DESCRIPTIONS[name],
        args_schema=COMMAND_ARGS[name],
    )


# generateForm is accepted from stored messages but never offered to the model
FORM_TOOLS: List[StructuredTool] = [
    create_form_tool(name) for name in CommandName if name != CommandName.GENERATE_FORM
]

FORM_TOOLS_BY_NAME: Dict[str, StructuredTool] = {t.name: t for t in FORM_TOOLS}


def run_form_tool(tool_call: dict) -> ToolMessage:
    """
    Execute one tool call from an AIMessage and wrap the result.

    Invalid calls produce an error ToolMessage instead of raising, so the
    model sees what went wrong.
    """
    name = tool_call.get("name", "")
    call_id = tool_call.get("id") or ""
    tool = FORM_TOOLS_BY_NAME.get(name)

    if tool is None:
        logger.warning("Model called unknown tool %r", name)
        return ToolMessage(
            content=json.dumps({"success": False, "error": f"Unknown tool '{name}'"}),
            tool_call_id=call_id,
            name=name,
            status="error",
        )

    try:
        result = tool.invoke(tool_call.get("args") or {})
    except (ValidationError, CommandValidationError) as exc:
        logger.warning("Tool call %s rejected: %s", name, exc)
        return ToolMessage(
            content=json.dumps({"success": False, "error": str(exc)}),
            tool_call_id=call_id,
            name=name,
            status="error",
        )

    return ToolMessage(content=json.dumps(result), tool_call_id=call_id, name=name)
