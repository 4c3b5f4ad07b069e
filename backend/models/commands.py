"""
Command taxonomy — the closed set of edits the assistant (or the user) can
issue against a form document.

Each command has a pydantic argument model. The same models serve as the
argument schemas of the LangChain tools the agent calls, so an invocation
that parses here is well-typed for the mutation engine, which never
re-validates its input.

Invocations arrive as ``{"id": ..., "name": ..., "args": {...}}`` (the
LangChain tool-call shape). Stored messages from older builds may use
``{"type": "tool-<name>", "input": {...}}`` instead; both are accepted.
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Type

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from errors import CommandValidationError
from models.form_document import FormElementType, FormStyle

logger = logging.getLogger(__name__)


class CommandName(str, Enum):
    # Section tree
    ADD_FIELDS = "addFields"
    GENERATE_FORM = "generateForm"  # legacy alias of addFields
    DELETE_FIELDS = "deleteFields"
    UPDATE_FIELD = "updateField"
    REORDER_FIELDS = "reorderFields"
    REPLACE_FORM = "replaceForm"
    ADD_SECTION = "addSection"
    UPDATE_SECTION = "updateSection"
    DELETE_SECTION = "deleteSection"
    REORDER_SECTIONS = "reorderSections"
    ADD_ELEMENT_TO_ROW = "addElementToRow"
    # Top-level settings
    UPDATE_FORM_STYLE = "updateFormStyle"
    UPDATE_DESIGN_SETTINGS = "updateDesignSettings"
    UPDATE_THANK_YOU_PAGE = "updateThankYouPage"


SETTINGS_COMMANDS = frozenset({
    CommandName.UPDATE_FORM_STYLE,
    CommandName.UPDATE_DESIGN_SETTINGS,
    CommandName.UPDATE_THANK_YOU_PAGE,
})

SECTION_TREE_COMMANDS = frozenset(set(CommandName) - SETTINGS_COMMANDS)


# ---------------------------------------------------------------------------
# Element attribute schemas, one per field kind
# ---------------------------------------------------------------------------

Align = Literal["left", "center", "right"]


class _Attributes(BaseModel):
    # Unknown keys are kept: the attribute bag stays open-ended.
    model_config = ConfigDict(extra="allow")


class _InputAttributes(_Attributes):
    label: str
    helperText: Optional[str] = None
    required: bool = False
    placeholder: Optional[str] = None


class TextAreaAttributes(_InputAttributes):
    rows: Optional[int] = Field(default=None, ge=1, le=20)


class DateAttributes(_Attributes):
    label: str
    helperText: Optional[str] = None
    required: bool = False
    includeTime: Optional[bool] = None


class CheckboxAttributes(_Attributes):
    label: str
    helperText: Optional[str] = None
    required: bool = False


class SelectAttributes(_InputAttributes):
    options: List[str] = Field(..., min_length=1)


class RadioGroupAttributes(CheckboxAttributes):
    options: List[str] = Field(..., min_length=2)


class CheckboxGroupAttributes(RadioGroupAttributes):
    minSelect: Optional[int] = Field(default=None, ge=0)
    maxSelect: Optional[int] = Field(default=None, ge=0)


class RatingAttributes(CheckboxAttributes):
    maxRating: int = Field(default=5, ge=3, le=10)
    ratingStyle: Literal["stars", "numbers"] = "stars"


class YesNoAttributes(CheckboxAttributes):
    yesLabel: Optional[str] = None
    noLabel: Optional[str] = None


class HeadingAttributes(_Attributes):
    title: str
    subtitle: Optional[str] = None
    level: Literal["h1", "h2", "h3", "h4"] = "h2"
    align: Optional[Align] = None


class RichTextAttributes(_Attributes):
    content: str
    align: Optional[Align] = None


class FileUploadAttributes(CheckboxAttributes):
    acceptedTypes: Optional[Literal["all", "images", "documents", "pdf"]] = None
    maxFileSizeMB: Optional[int] = Field(default=None, ge=1, le=50)
    allowMultiple: Optional[bool] = None


class ImageAttributes(_Attributes):
    imageUrl: str
    altText: Optional[str] = None
    caption: Optional[str] = None
    width: Optional[Literal["small", "medium", "large", "full"]] = None
    align: Optional[Align] = None
    borderRadius: Optional[Literal["none", "sm", "md", "lg", "xl", "full"]] = None
    aspectRatio: Optional[Literal["auto", "16:9", "4:3", "1:1", "3:2", "2:3", "21:9"]] = None
    shadow: Optional[Literal["none", "sm", "md", "lg", "xl"]] = None
    linkUrl: Optional[str] = None
    linkNewTab: Optional[bool] = None


ELEMENT_ATTRIBUTE_SCHEMAS: Dict[FormElementType, Type[_Attributes]] = {
    FormElementType.TEXT_FIELD: _InputAttributes,
    FormElementType.NUMBER: _InputAttributes,
    FormElementType.EMAIL: _InputAttributes,
    FormElementType.PHONE: _InputAttributes,
    FormElementType.TEXTAREA: TextAreaAttributes,
    FormElementType.DATE: DateAttributes,
    FormElementType.CHECKBOX: CheckboxAttributes,
    FormElementType.SELECT: SelectAttributes,
    FormElementType.RADIO_GROUP: RadioGroupAttributes,
    FormElementType.CHECKBOX_GROUP: CheckboxGroupAttributes,
    FormElementType.RATING: RatingAttributes,
    FormElementType.YES_NO: YesNoAttributes,
    FormElementType.HEADING: HeadingAttributes,
    FormElementType.RICH_TEXT: RichTextAttributes,
    FormElementType.FILE_UPLOAD: FileUploadAttributes,
    FormElementType.IMAGE: ImageAttributes,
}


# ---------------------------------------------------------------------------
# Payload models shared by several commands
# ---------------------------------------------------------------------------

class ElementPayload(BaseModel):
    """A form element as sent by the agent. The id is generated when omitted."""

    id: Optional[str] = Field(default=None, description="Existing element ID (replaceForm only).")
    type: FormElementType = Field(..., description="The field kind, e.g. 'TextField' or 'Select'.")
    extraAttributes: Dict[str, Any] = Field(
        default_factory=dict,
        description="Field attributes such as label, placeholder, required, options.",
    )

    @model_validator(mode="after")
    def _check_attributes(self) -> "ElementPayload":
        schema = ELEMENT_ATTRIBUTE_SCHEMAS[self.type]
        self.extraAttributes = schema.model_validate(self.extraAttributes).model_dump(
            exclude_none=True
        )
        return self


class SectionPayload(BaseModel):
    id: Optional[str] = Field(default=None, description="Existing section ID; generated if omitted.")
    title: str = Field(..., description="The title displayed at the top of the section.")
    description: Optional[str] = None
    showTitle: Optional[bool] = None
    elements: List[ElementPayload] = Field(default_factory=list)


class FieldUpdates(BaseModel):
    type: Optional[FormElementType] = Field(
        default=None, description="New field type, only when changing the type."
    )
    extraAttributes: Optional[Dict[str, Any]] = Field(
        default=None, description="Only the attributes that change."
    )


class SectionUpdates(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    showTitle: Optional[bool] = None


class DesignSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    backgroundColor: Optional[str] = None
    primaryColor: Optional[str] = None
    textColor: Optional[str] = None
    buttonColor: Optional[str] = None
    buttonTextColor: Optional[str] = None
    fontFamily: Optional[Literal[
        "system", "inter", "roboto", "poppins", "open-sans",
        "lato", "montserrat", "playfair", "merriweather",
    ]] = None
    buttonCornerRadius: Optional[Literal["none", "sm", "md", "lg", "full"]] = None
    questionSpacing: Optional[Literal["compact", "normal", "relaxed"]] = None
    showSections: Optional[bool] = None


class ThankYouPageUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    description: Optional[str] = None
    showConfetti: Optional[bool] = None
    buttonText: Optional[str] = None
    buttonUrl: Optional[str] = None
    showButton: Optional[bool] = None


# ---------------------------------------------------------------------------
# Command argument models
# ---------------------------------------------------------------------------

class AddFieldsArgs(BaseModel):
    elements: List[ElementPayload] = Field(..., description="Fields to add, in order.")
    insertAfterFieldId: Optional[str] = Field(
        default=None, description="Insert the new fields right after this field."
    )
    sectionId: Optional[str] = Field(
        default=None, description="Append to this section when no insert position is given."
    )


class DeleteFieldsArgs(BaseModel):
    fieldIds: List[str] = Field(..., description="IDs of the fields to delete.")


class UpdateFieldArgs(BaseModel):
    fieldId: str = Field(..., description="ID of the field to update.")
    updates: FieldUpdates


class ReorderFieldsArgs(BaseModel):
    sectionId: str = Field(..., description="Section containing the fields.")
    fieldIds: List[str] = Field(..., description="All field IDs of the section in the new order.")


class ReplaceFormArgs(BaseModel):
    sections: List[SectionPayload] = Field(..., description="The complete new form structure.")


class AddSectionArgs(BaseModel):
    title: str
    description: Optional[str] = None
    showTitle: Optional[bool] = None
    insertAfterSectionId: Optional[str] = Field(
        default=None, description="Insert after this section; appended when omitted."
    )
    elements: Optional[List[ElementPayload]] = Field(
        default=None, description="Optional initial fields of the section."
    )


class UpdateSectionArgs(BaseModel):
    sectionId: str
    updates: SectionUpdates


class DeleteSectionArgs(BaseModel):
    sectionId: str = Field(..., description="Section to delete together with its fields.")


class ReorderSectionsArgs(BaseModel):
    sectionIds: List[str] = Field(..., description="All section IDs in the new order.")


class AddElementToRowArgs(BaseModel):
    sectionId: str = Field(..., description="Section containing the target row.")
    targetElementId: str = Field(..., description="The new element is placed next to this one.")
    position: Literal["left", "right"]
    element: ElementPayload


class UpdateFormStyleArgs(BaseModel):
    style: FormStyle = Field(
        ...,
        validation_alias=AliasChoices("style", "layout"),
        description="'classic' (one scrollable page) or 'stepped' (one section at a time).",
    )

    @field_validator("style", mode="before")
    @classmethod
    def _legacy_style_name(cls, value: Any) -> Any:
        # Forms created before the rename stored the stepped layout as "typeform".
        return FormStyle.STEPPED if value == "typeform" else value


class UpdateDesignSettingsArgs(BaseModel):
    settings: DesignSettingsUpdate


class UpdateThankYouPageArgs(BaseModel):
    settings: ThankYouPageUpdate


COMMAND_ARGS: Dict[CommandName, Type[BaseModel]] = {
    CommandName.ADD_FIELDS: AddFieldsArgs,
    CommandName.GENERATE_FORM: AddFieldsArgs,
    CommandName.DELETE_FIELDS: DeleteFieldsArgs,
    CommandName.UPDATE_FIELD: UpdateFieldArgs,
    CommandName.REORDER_FIELDS: ReorderFieldsArgs,
    CommandName.REPLACE_FORM: ReplaceFormArgs,
    CommandName.ADD_SECTION: AddSectionArgs,
    CommandName.UPDATE_SECTION: UpdateSectionArgs,
    CommandName.DELETE_SECTION: DeleteSectionArgs,
    CommandName.REORDER_SECTIONS: ReorderSectionsArgs,
    CommandName.ADD_ELEMENT_TO_ROW: AddElementToRowArgs,
    CommandName.UPDATE_FORM_STYLE: UpdateFormStyleArgs,
    CommandName.UPDATE_DESIGN_SETTINGS: UpdateDesignSettingsArgs,
    CommandName.UPDATE_THANK_YOU_PAGE: UpdateThankYouPageArgs,
}


class FormCommand(BaseModel):
    """A validated command: its name plus the matching argument model."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: CommandName
    args: Any
    invocationId: Optional[str] = None


def parse_command(
    name: str,
    arguments: Optional[dict] = None,
    invocation_id: Optional[str] = None,
) -> FormCommand:
    """
    Validate a raw invocation into a FormCommand.

    Raises:
        CommandValidationError: unknown command name or invalid arguments.
    """
    try:
        command_name = CommandName(name)
    except ValueError:
        raise CommandValidationError(name, "unknown command") from None

    try:
        args = COMMAND_ARGS[command_name].model_validate(arguments or {})
    except ValidationError as exc:
        raise CommandValidationError(name, str(exc)) from exc

    return FormCommand(name=command_name, args=args, invocationId=invocation_id)


def make_command(name: str, **arguments: Any) -> FormCommand:
    """Shorthand for parse_command with keyword arguments."""
    return parse_command(name, arguments)


def _invocation_name(invocation: dict) -> str:
    name = invocation.get("name") or invocation.get("toolName") or ""
    if not name and str(invocation.get("type", "")).startswith("tool-"):
        name = invocation["type"][len("tool-"):]
    return name


def _invocation_args(invocation: dict) -> dict:
    for key in ("args", "input", "arguments"):
        if key in invocation:
            value = invocation[key]
            if isinstance(value, str):
                return json.loads(value)
            return value or {}
    return {}


def parse_invocations(invocations: Optional[Iterable[dict]]) -> List[FormCommand]:
    """
    Convert stored or streamed invocations into commands, in order.

    Malformed invocations are dropped with a warning so one bad tool call
    never blocks the rest of the batch.
    """
    commands: List[FormCommand] = []
    for invocation in invocations or []:
        name = _invocation_name(invocation)
        try:
            args = _invocation_args(invocation)
            commands.append(
                parse_command(name, args, invocation_id=invocation.get("id"))
            )
        except (CommandValidationError, json.JSONDecodeError) as exc:
            logger.warning("Dropping invocation %r: %s", name, exc)
    return commands
