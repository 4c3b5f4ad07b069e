"""Domain exceptions raised by the FormPilot services."""


class FormPilotError(Exception):
    """Base class for all FormPilot errors."""


class CommandValidationError(FormPilotError):
    """A command invocation has an unknown name or malformed arguments."""

    def __init__(self, name: str, detail: str) -> None:
        super().__init__(f"Invalid command '{name}': {detail}")
        self.name = name
        self.detail = detail


class ChannelBusyError(FormPilotError):
    """A message was sent while the agent channel was still busy."""


class ContinuationTimeout(FormPilotError):
    """The agent channel did not become idle before the continuation deadline."""


class SessionNotReadyError(FormPilotError):
    """The build session has no chat session yet (initialize() was not awaited)."""


class MessageNotFoundError(FormPilotError):
    """No chat message with the given id exists in the build session."""
