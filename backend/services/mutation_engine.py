"""
Mutation Engine — applies form commands to a FormDocument.

apply_command() is a pure function: it returns a new document and never
edits its input. Untouched sections, rows and elements are reused as-is, so
callers can detect "nothing changed" by identity (``new is old``).

apply_batch() threads a list of commands through one working document in
emission order, then reconciles the canvas selection once. The caller
publishes the returned document in a single step, so no reader ever sees a
half-applied batch.

Reference errors (unknown field, section or anchor ids) and row-capacity
violations are silent no-ops; a late or duplicated command can never break
a batch.
"""

from typing import Callable, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from models.commands import (
    AddElementToRowArgs,
    AddFieldsArgs,
    AddSectionArgs,
    CommandName,
    DeleteFieldsArgs,
    DeleteSectionArgs,
    ElementPayload,
    FormCommand,
    ReorderFieldsArgs,
    ReorderSectionsArgs,
    ReplaceFormArgs,
    UpdateDesignSettingsArgs,
    UpdateFieldArgs,
    UpdateFormStyleArgs,
    UpdateSectionArgs,
    UpdateThankYouPageArgs,
)
from models.form_document import (
    MAX_ROW_ELEMENTS,
    FormDocument,
    FormElement,
    FormRow,
    FormSection,
    Selection,
    all_element_ids,
    create_row,
    create_section,
    get_section_elements,
    new_id,
)


class BatchResult(BaseModel):
    """Outcome of apply_batch: the document to publish and the new selection."""

    model_config = ConfigDict(frozen=True)

    document: FormDocument
    selection: Selection
    commandNames: List[CommandName]


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------

def _materialize(payload: ElementPayload, taken_ids: Set[str]) -> FormElement:
    """Turn an element payload into a FormElement with a document-unique id."""
    element_id = payload.id if payload.id and payload.id not in taken_ids else new_id()
    taken_ids.add(element_id)
    return FormElement(
        id=element_id,
        type=payload.type,
        extraAttributes=dict(payload.extraAttributes),
    )


def _section_index(sections: List[FormSection], section_id: Optional[str]) -> int:
    if section_id is None:
        return -1
    for index, section in enumerate(sections):
        if section.id == section_id:
            return index
    return -1


def _replace_at(items: list, index: int, item) -> list:
    return items[:index] + [item] + items[index + 1:]


def _with_sections(document: FormDocument, sections: List[FormSection]) -> FormDocument:
    return document.model_copy(update={"sections": sections})


def _map_elements(
    document: FormDocument,
    element_id: str,
    transform: Callable[[FormElement], FormElement],
) -> FormDocument:
    """Rebuild only the path from the root down to element_id."""
    for s_index, section in enumerate(document.sections):
        for r_index, row in enumerate(section.rows):
            for e_index, element in enumerate(row.elements):
                if element.id != element_id:
                    continue
                new_row = row.model_copy(update={
                    "elements": _replace_at(row.elements, e_index, transform(element)),
                })
                new_section = section.model_copy(update={
                    "rows": _replace_at(section.rows, r_index, new_row),
                })
                return _with_sections(
                    document, _replace_at(document.sections, s_index, new_section)
                )
    return document


# ---------------------------------------------------------------------------
# Section-tree commands
# ---------------------------------------------------------------------------

def _add_fields(
    document: FormDocument,
    args: AddFieldsArgs,
    current_section_id: Optional[str],
) -> FormDocument:
    taken = all_element_ids(document)
    new_rows = [create_row(_materialize(payload, taken)) for payload in args.elements]
    if not new_rows:
        return document

    sections = list(document.sections)
    if not sections:
        sections = [create_section("Section 1")]

    if args.insertAfterFieldId:
        for s_index, section in enumerate(sections):
            for r_index, row in enumerate(section.rows):
                if any(el.id == args.insertAfterFieldId for el in row.elements):
                    rows = section.rows[:r_index + 1] + new_rows + section.rows[r_index + 1:]
                    sections[s_index] = section.model_copy(update={"rows": rows})
                    return _with_sections(document, sections)

    target = _section_index(sections, args.sectionId)
    if target == -1:
        target = _section_index(sections, current_section_id)
    if target == -1:
        target = 0

    section = sections[target]
    sections[target] = section.model_copy(update={"rows": section.rows + new_rows})
    return _with_sections(document, sections)


def _delete_fields(document: FormDocument, args: DeleteFieldsArgs) -> FormDocument:
    doomed = set(args.fieldIds)
    if not doomed & all_element_ids(document):
        return document

    sections = []
    for section in document.sections:
        if not any(el.id in doomed for el in get_section_elements(section)):
            sections.append(section)
            continue
        rows = []
        for row in section.rows:
            if not any(el.id in doomed for el in row.elements):
                rows.append(row)
                continue
            remaining = [el for el in row.elements if el.id not in doomed]
            if remaining:
                rows.append(row.model_copy(update={"elements": remaining}))
        sections.append(section.model_copy(update={"rows": rows}))
    return _with_sections(document, sections)


def _update_field(document: FormDocument, args: UpdateFieldArgs) -> FormDocument:
    return _map_elements(document, args.fieldId, lambda el: merge_element(el, args))


def merge_element(element: FormElement, args: UpdateFieldArgs) -> FormElement:
    """Apply an updateField payload: replace the type, shallow-merge attributes."""
    updates = args.updates
    return element.model_copy(update={
        "type": updates.type or element.type,
        "extraAttributes": {**element.extraAttributes, **(updates.extraAttributes or {})},
    })


def _reorder_fields(document: FormDocument, args: ReorderFieldsArgs) -> FormDocument:
    index = _section_index(document.sections, args.sectionId)
    if index == -1:
        return document

    section = document.sections[index]
    elements = get_section_elements(section)
    by_id = {el.id: el for el in elements}

    ordered: List[FormElement] = []
    placed: Set[str] = set()
    for field_id in args.fieldIds:
        if field_id in by_id and field_id not in placed:
            ordered.append(by_id[field_id])
            placed.add(field_id)
    # Elements the caller did not name are kept, after the named ones.
    ordered.extend(el for el in elements if el.id not in placed)

    rows = [create_row(el) for el in ordered]
    return _with_sections(
        document,
        _replace_at(document.sections, index, section.model_copy(update={"rows": rows})),
    )


def _replace_form(document: FormDocument, args: ReplaceFormArgs) -> FormDocument:
    taken_elements: Set[str] = set()
    taken_sections: Set[str] = set()
    sections = []
    for payload in args.sections:
        section_id = payload.id if payload.id and payload.id not in taken_sections else new_id()
        taken_sections.add(section_id)
        sections.append(create_section(
            payload.title,
            section_id=section_id,
            description=payload.description or "",
            show_title=bool(payload.showTitle),
            rows=[create_row(_materialize(el, taken_elements)) for el in payload.elements],
        ))
    return _with_sections(document, sections)


def _add_section(document: FormDocument, args: AddSectionArgs) -> FormDocument:
    taken = all_element_ids(document)
    section = create_section(
        args.title,
        description=args.description or "",
        show_title=bool(args.showTitle),
        rows=[create_row(_materialize(el, taken)) for el in args.elements or []],
    )
    anchor = _section_index(document.sections, args.insertAfterSectionId)
    if anchor == -1:
        return _with_sections(document, document.sections + [section])
    sections = document.sections[:anchor + 1] + [section] + document.sections[anchor + 1:]
    return _with_sections(document, sections)


def _update_section(document: FormDocument, args: UpdateSectionArgs) -> FormDocument:
    index = _section_index(document.sections, args.sectionId)
    updates = args.updates.model_dump(exclude_none=True)
    if index == -1 or not updates:
        return document
    section = document.sections[index].model_copy(update=updates)
    return _with_sections(document, _replace_at(document.sections, index, section))


def _delete_section(document: FormDocument, args: DeleteSectionArgs) -> FormDocument:
    index = _section_index(document.sections, args.sectionId)
    if index == -1:
        return document
    return _with_sections(document, document.sections[:index] + document.sections[index + 1:])


def _reorder_sections(document: FormDocument, args: ReorderSectionsArgs) -> FormDocument:
    by_id = {s.id: s for s in document.sections}
    ordered: List[FormSection] = []
    placed: Set[str] = set()
    for section_id in args.sectionIds:
        if section_id in by_id and section_id not in placed:
            ordered.append(by_id[section_id])
            placed.add(section_id)
    ordered.extend(s for s in document.sections if s.id not in placed)
    return _with_sections(document, ordered)


def _add_element_to_row(document: FormDocument, args: AddElementToRowArgs) -> FormDocument:
    # Look in the named section first; a stale sectionId still finds the row.
    preferred = _section_index(document.sections, args.sectionId)
    order = list(range(len(document.sections)))
    if preferred != -1:
        order.remove(preferred)
        order.insert(0, preferred)

    for s_index in order:
        section = document.sections[s_index]
        for r_index, row in enumerate(section.rows):
            if not any(el.id == args.targetElementId for el in row.elements):
                continue
            if len(row.elements) >= MAX_ROW_ELEMENTS:
                return document
            element = _materialize(args.element, all_element_ids(document))
            if args.position == "left":
                elements = [element] + row.elements
            else:
                elements = row.elements + [element]
            new_row: FormRow = row.model_copy(update={"elements": elements})
            new_section = section.model_copy(update={
                "rows": _replace_at(section.rows, r_index, new_row),
            })
            return _with_sections(
                document, _replace_at(document.sections, s_index, new_section)
            )
    return document


# ---------------------------------------------------------------------------
# Top-level settings commands
# ---------------------------------------------------------------------------

def _update_form_style(document: FormDocument, args: UpdateFormStyleArgs) -> FormDocument:
    return document.model_copy(update={"style": args.style})


def _update_design_settings(document: FormDocument, args: UpdateDesignSettingsArgs) -> FormDocument:
    merged = {**document.designSettings, **args.settings.model_dump(exclude_none=True)}
    return document.model_copy(update={"designSettings": merged})


def _update_thank_you_page(document: FormDocument, args: UpdateThankYouPageArgs) -> FormDocument:
    merged = {**document.thankYouPage, **args.settings.model_dump(exclude_none=True)}
    return document.model_copy(update={"thankYouPage": merged})


_HANDLERS: Dict[CommandName, Callable[[FormDocument, BaseModel], FormDocument]] = {
    CommandName.DELETE_FIELDS: _delete_fields,
    CommandName.UPDATE_FIELD: _update_field,
    CommandName.REORDER_FIELDS: _reorder_fields,
    CommandName.REPLACE_FORM: _replace_form,
    CommandName.ADD_SECTION: _add_section,
    CommandName.UPDATE_SECTION: _update_section,
    CommandName.DELETE_SECTION: _delete_section,
    CommandName.REORDER_SECTIONS: _reorder_sections,
    CommandName.ADD_ELEMENT_TO_ROW: _add_element_to_row,
    CommandName.UPDATE_FORM_STYLE: _update_form_style,
    CommandName.UPDATE_DESIGN_SETTINGS: _update_design_settings,
    CommandName.UPDATE_THANK_YOU_PAGE: _update_thank_you_page,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def apply_command(
    document: FormDocument,
    command: FormCommand,
    current_section_id: Optional[str] = None,
) -> FormDocument:
    """
    Apply one command and return the resulting document.

    Args:
        document:           The document to transform (left untouched).
        command:            A validated FormCommand.
        current_section_id: The canvas's current section; addFields appends
                            there when neither an anchor field nor a section
                            is named.

    Returns:
        The new document, or ``document`` itself when the command is a no-op.
    """
    if command.name in (CommandName.ADD_FIELDS, CommandName.GENERATE_FORM):
        return _add_fields(document, command.args, current_section_id)
    return _HANDLERS[command.name](document, command.args)


def apply_batch(
    document: FormDocument,
    commands: Iterable[FormCommand],
    selection: Optional[Selection] = None,
) -> BatchResult:
    """
    Apply commands in order against one working copy and reconcile selection.

    Later commands see the effects of earlier ones. Only the final document is
    returned; intermediate documents are never exposed.
    """
    commands = list(commands)
    selection = selection or Selection()

    working = document
    for command in commands:
        working = apply_command(working, command, selection.currentSectionId)

    return BatchResult(
        document=working,
        selection=reconcile_selection(selection, commands, working),
        commandNames=[c.name for c in commands],
    )


def reconcile_selection(
    selection: Selection,
    commands: List[FormCommand],
    document: FormDocument,
) -> Selection:
    """
    Bring the canvas selection in line with a freshly applied batch.

    Runs once per batch. After it returns, no selection field refers to an id
    missing from ``document``.
    """
    names = {c.name for c in commands}
    selected = selection.selectedElement
    selected_section_id = selection.selectedSectionId

    if CommandName.REPLACE_FORM in names:
        selected, selected_section_id = None, None
    else:
        deleted_fields: Set[str] = set()
        deleted_sections: Set[str] = set()
        for command in commands:
            if command.name == CommandName.DELETE_FIELDS:
                deleted_fields.update(command.args.fieldIds)
            elif command.name == CommandName.DELETE_SECTION:
                deleted_sections.add(command.args.sectionId)

        if selected is not None and selected.id in deleted_fields:
            selected = None
        elif selected_section_id is not None and selected_section_id in deleted_sections:
            selected_section_id = None
        elif selected is not None:
            for command in commands:
                if command.name == CommandName.UPDATE_FIELD and command.args.fieldId == selected.id:
                    selected = merge_element(selected, command.args)

    section_ids = [s.id for s in document.sections]
    if selected is not None and selected.id not in all_element_ids(document):
        selected = None
    if selected_section_id not in section_ids:
        selected_section_id = None

    current_section_id = selection.currentSectionId
    if current_section_id is not None and current_section_id not in section_ids:
        current_section_id = section_ids[0] if section_ids else None

    return Selection(
        selectedElement=selected,
        selectedSectionId=selected_section_id,
        currentSectionId=current_section_id,
    )
