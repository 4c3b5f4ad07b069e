"""
Form document model — the typed tree a form is made of.

    FormDocument
      sections: [FormSection]
        rows: [FormRow]          (0–2 elements each, side by side)
          elements: [FormElement]
      style / designSettings / thankYouPage   (independent top-level records)

Documents are treated as immutable values. The mutation engine never edits
a model in place; it builds new models that reuse every untouched subtree.
Field names follow the frontend JSON (camelCase) so documents round-trip
without aliasing.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field


MAX_ROW_ELEMENTS = 2


class FormElementType(str, Enum):
    TEXT_FIELD = "TextField"
    NUMBER = "Number"
    TEXTAREA = "TextArea"
    DATE = "Date"
    CHECKBOX = "Checkbox"
    SELECT = "Select"
    EMAIL = "Email"
    PHONE = "Phone"
    RADIO_GROUP = "RadioGroup"
    CHECKBOX_GROUP = "CheckboxGroup"
    RATING = "Rating"
    YES_NO = "YesNo"
    HEADING = "Heading"
    RICH_TEXT = "RichText"
    FILE_UPLOAD = "FileUpload"
    IMAGE = "Image"


class FormStyle(str, Enum):
    """How the form is presented to respondents."""

    CLASSIC = "classic"  # every section on one scrollable page
    STEPPED = "stepped"  # one section at a time


DEFAULT_DESIGN_SETTINGS: Dict[str, Any] = {
    "backgroundColor": "#ffffff",
    "primaryColor": "#6366f1",
    "textColor": "#1f2937",
    "buttonColor": "#6366f1",
    "buttonTextColor": "#ffffff",
    "fontFamily": "system",
    "buttonCornerRadius": "md",
    "questionSpacing": "normal",
    "showSections": True,
}

DEFAULT_THANK_YOU_PAGE: Dict[str, Any] = {
    "title": "Thank You!",
    "description": "Your response has been submitted successfully. You can close this page now.",
    "showConfetti": True,
    "buttonText": "Submit another response",
    "buttonUrl": "",
    "showButton": False,
}


class FormElement(BaseModel):
    """A single field or display block. extraAttributes is opaque to the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: FormElementType
    extraAttributes: Dict[str, Any] = Field(default_factory=dict)


class FormRow(BaseModel):
    """A horizontal container holding up to two elements."""

    model_config = ConfigDict(frozen=True)

    id: str
    elements: List[FormElement] = Field(default_factory=list)


class FormSection(BaseModel):
    """A group of rows; rendered as one page in the stepped style."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = "Untitled Section"
    description: Optional[str] = ""
    showTitle: Optional[bool] = False
    rows: List[FormRow] = Field(default_factory=list)

    @property
    def elements(self) -> List[FormElement]:
        return get_section_elements(self)


class FormDocument(BaseModel):
    """The root of a form: the section tree plus the three settings records."""

    model_config = ConfigDict(frozen=True)

    sections: List[FormSection] = Field(default_factory=list)
    style: FormStyle = FormStyle.CLASSIC
    designSettings: Dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_DESIGN_SETTINGS)
    )
    thankYouPage: Dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_THANK_YOU_PAGE)
    )


class Selection(BaseModel):
    """
    Canvas selection state mirrored by the engine.

    selectedElement is a snapshot of the selected element so the properties
    panel can render it without looking it up again.
    """

    model_config = ConfigDict(frozen=True)

    selectedElement: Optional[FormElement] = None
    selectedSectionId: Optional[str] = None
    currentSectionId: Optional[str] = None

    @property
    def selected_element_id(self) -> Optional[str]:
        return self.selectedElement.id if self.selectedElement else None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def new_id() -> str:
    """Generate a fresh opaque id for an element, row or section."""
    return str(uuid.uuid4())


def create_row(element: Optional[FormElement] = None, row_id: Optional[str] = None) -> FormRow:
    return FormRow(
        id=row_id or new_id(),
        elements=[element] if element is not None else [],
    )


def create_section(
    title: Optional[str] = None,
    section_id: Optional[str] = None,
    description: Optional[str] = "",
    show_title: Optional[bool] = False,
    rows: Optional[List[FormRow]] = None,
) -> FormSection:
    return FormSection(
        id=section_id or new_id(),
        title=title or "Untitled Section",
        description=description,
        showTitle=show_title,
        rows=rows or [],
    )


def get_section_elements(section: FormSection) -> List[FormElement]:
    """Flatten a section's rows into its element list (row order, then position)."""
    return [element for row in section.rows for element in row.elements]


def all_element_ids(document: FormDocument) -> Set[str]:
    return {
        element.id
        for section in document.sections
        for row in section.rows
        for element in row.elements
    }


def find_element(document: FormDocument, element_id: str) -> Optional[FormElement]:
    for section in document.sections:
        for row in section.rows:
            for element in row.elements:
                if element.id == element_id:
                    return element
    return None


def find_element_location(
    document: FormDocument,
    element_id: str,
) -> Optional[Tuple[str, str, int]]:
    """
    Locate an element in the tree.

    Returns:
        (section_id, row_id, row_index) or None if the id is not present.
    """
    for section in document.sections:
        for row_index, row in enumerate(section.rows):
            if any(el.id == element_id for el in row.elements):
                return section.id, row.id, row_index
    return None


def migrate_to_row_format(raw_section: dict) -> FormSection:
    """
    Upgrade a stored section to the row format.

    Older forms stored a flat ``elements`` list per section; each element
    becomes its own row. Sections that already have rows are validated as-is.
    """
    if isinstance(raw_section.get("rows"), list):
        return FormSection.model_validate(raw_section)

    elements = [FormElement.model_validate(el) for el in raw_section.get("elements") or []]
    return FormSection(
        id=raw_section.get("id") or new_id(),
        title=raw_section.get("title") or "Untitled Section",
        description=raw_section.get("description"),
        showTitle=raw_section.get("showTitle"),
        rows=[create_row(el) for el in elements],
    )
