"""
AgentTurnState — the data passed between the nodes of one form-agent turn.

A turn is a single trip through the graph: the agent node streams one model
response, the tools node answers every tool call in it. Nodes must not keep
state of their own; everything passes through AgentTurnState.
"""

from typing import Annotated
import operator
from typing_extensions import TypedDict


class AgentTurnState(TypedDict):
    """
    State of one agent turn.

    Fields:
        messages:      Conversation so far (user, assistant and tool messages).
                       Uses operator.add reducer so nodes append, never overwrite.
        form_context:  Description of the current form, appended to the
                       system prompt.
    """

    messages: Annotated[list, operator.add]
    form_context: str
