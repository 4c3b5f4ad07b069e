"""
Form Agent — the LLM side of the form-building assistant.

One agent turn is a small LangGraph:

    form_agent → (tool calls?) → form_tools → END
               → (no tool calls) ────────────→ END

The agent node streams the model response so the UI can show text as it
arrives and so a stopped turn still has the part that was received. The
tools node only answers the tool calls with summaries; the edits themselves
are applied after the user confirms them.
"""

import inspect
import json
import os
from typing import Any, Callable, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, message_chunk_to_message
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph

from models.form_document import FormDocument, get_section_elements
from state import AgentTurnState
from tools import FORM_TOOLS, run_form_tool


_SYSTEM_PROMPT = """You are an AI assistant specialized in helping users build forms. You work within a form builder application where users can create forms with various field types, organize them into sections, customize the design, and create personalized thank you pages.

## Your Capabilities
1. **Field Management**: Add, delete, update, and reorder form fields
2. **Section Management**: Create, update, delete, and reorder sections (pages in the stepped style)
3. **Layout**: Place fields side by side, at most two per row
4. **Form Style**: Switch between 'classic' (one scrollable page) and 'stepped' (one section at a time)
5. **Design Settings**: Customize colors, fonts, button styles and spacing
6. **Thank You Page**: Customize the confirmation page shown after submission

## Field Types
- Input: TextField, Number, TextArea (rows 1-20), Email, Phone, Date (includeTime)
- Selection: Select, RadioGroup, CheckboxGroup (minSelect, maxSelect), Checkbox, YesNo (yesLabel, noLabel), Rating (maxRating 3-10, ratingStyle 'stars'|'numbers')
- Display: Heading (title, subtitle, level 'h1'-'h4'), RichText (content), Image (imageUrl, altText, caption)
- File: FileUpload (acceptedTypes 'all'|'images'|'documents'|'pdf', maxFileSizeMB 1-50, allowMultiple)

Input fields take label, placeholder, helperText and required. Select, RadioGroup and CheckboxGroup need options.

## Building a New Form
Work through the form one stage at a time and stop after each stage so the user can review it:
1. Structure: sections and fields (replaceForm for a new form)
2. Style: updateFormStyle
3. Design: updateDesignSettings
4. Confirmation page: updateThankYouPage
When the user says "Continue", move on to the next stage. When they reject a stage, propose a different take on that same stage.

## Critical Rules
1. Always reference existing fields and sections by their ID
2. To replace a field, use deleteFields, then addFields with insertAfterFieldId
3. For side-by-side layouts use addElementToRow
4. reorderFields and addElementToRow need the section ID
5. Give a brief explanation of your changes and stay conversational"""


_MODEL_MAP = {
    "gpt-4o-mini": lambda: ChatOpenAI(
        model="gpt-4o-mini",
        api_key=os.environ.get("OPENAI_API_KEY"),
        temperature=0.7,
        max_tokens=4096,
        streaming=True,
    ),
    "gpt-4o": lambda: ChatOpenAI(
        model="gpt-4o",
        api_key=os.environ.get("OPENAI_API_KEY"),
        temperature=0.7,
        max_tokens=4096,
        streaming=True,
    ),
    "claude-3-5-sonnet": lambda: ChatAnthropic(
        model="claude-3-5-sonnet-20241022",
        api_key=os.environ.get("ANTHROPIC_API_KEY"),
        temperature=0.7,
        max_tokens=4096,
        streaming=True,
    ),
}


def _get_llm(model_name: str) -> Any:
    """Instantiate a LangChain chat model by model name."""
    factory = _MODEL_MAP.get(model_name)
    if factory is None:
        raise ValueError(
            f"Unknown model '{model_name}'. "
            f"Supported models: {list(_MODEL_MAP.keys())}"
        )
    return factory()


def describe_form(document: Optional[FormDocument]) -> str:
    """Render the current form as a system-prompt appendix."""
    if document is None or not document.sections:
        return (
            "\n\n## Current Form State\n"
            "The form is currently empty. No sections or fields have been added yet."
        )

    blocks = []
    total = 0
    for section_index, section in enumerate(document.sections, 1):
        lines = []
        for row in section.rows:
            for position, element in enumerate(row.elements):
                total += 1
                attrs = element.extraAttributes
                label = attrs.get("label") or attrs.get("title") or "Untitled"
                required = " [Required]" if attrs.get("required") else ""
                side = f" (side-by-side in row {row.id})" if position > 0 else ""
                lines.append(
                    f'    {len(lines) + 1}. "{label}" (ID: {element.id}, Type: {element.type.value})'
                    f"{required}{side}"
                )
        header = f'Section {section_index}: "{section.title}" (ID: {section.id})'
        if section.showTitle:
            header += " [Title visible]"
        if section.description:
            header += f"\n  Description: {section.description}"
        blocks.append(header + "\n  Fields:\n" + ("\n".join(lines) or "    (no fields)"))

    state = [
        {
            "id": section.id,
            "title": section.title,
            "description": section.description,
            "showTitle": section.showTitle,
            "elements": [el.model_dump(mode="json") for el in get_section_elements(section)],
        }
        for section in document.sections
    ]
    return (
        "\n\n## Current Form Structure\n"
        f"The form has {len(document.sections)} section(s) with {total} total field(s):\n\n"
        + "\n\n".join(blocks)
        + f"\n\nStyle: {document.style.value}"
        + "\n\nFull state for reference:\n"
        + json.dumps(state, indent=2)
    )


def route_after_agent(state: AgentTurnState) -> str:
    """
    Conditional edge function: run the tools node only when the model
    called at least one tool.
    """
    last = state["messages"][-1] if state["messages"] else None
    if getattr(last, "tool_calls", None):
        return "form_tools"
    return END


def build_form_agent_graph(
    llm: Any,
    on_chunk: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """
    Build and compile the graph for one agent turn.

    Args:
        llm:      A LangChain chat model supporting bind_tools() and astream().
        on_chunk: Optional callback (sync or async) receiving every streamed
                  AIMessageChunk. Used for live text and for salvaging a
                  stopped turn.

    Returns:
        A compiled LangGraph StateGraph.
    """
    bound = llm.bind_tools(FORM_TOOLS)

    async def form_agent_node(state: AgentTurnState) -> dict:
        prompt = [SystemMessage(content=_SYSTEM_PROMPT + state.get("form_context", ""))]
        gathered = None
        async for chunk in bound.astream(prompt + list(state["messages"])):
            gathered = chunk if gathered is None else gathered + chunk
            if on_chunk is not None:
                result = on_chunk(chunk)
                if inspect.isawaitable(result):
                    await result

        if gathered is None:
            raise RuntimeError("Model returned an empty response")
        return {"messages": [message_chunk_to_message(gathered)]}

    def form_tools_node(state: AgentTurnState) -> dict:
        last = state["messages"][-1]
        return {"messages": [run_form_tool(call) for call in last.tool_calls]}

    graph = StateGraph(AgentTurnState)
    graph.add_node("form_agent", form_agent_node)
    graph.add_node("form_tools", form_tools_node)

    graph.set_entry_point("form_agent")
    graph.add_conditional_edges(
        "form_agent",
        route_after_agent,
        {"form_tools": "form_tools", END: END},
    )
    graph.add_edge("form_tools", END)

    return graph.compile()
