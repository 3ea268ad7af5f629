"""Keep formulas pointing at the right names when fields or forms are renamed."""

import logging
import re

logger = logging.getLogger(__name__)

# Characters that can continue a name: word characters (CJK included) and '.'
_NAME_CHAR = r'[\w.]'


def rename_field_references(formula, old_name, new_name):
    """
    Replace standalone occurrences of a field name in a same-form formula.

    An occurrence that is part of a longer name ("净重量" when renaming
    "重量") or that follows a "Form." prefix is left alone.
    """
    if not formula or not old_name or not new_name or old_name == new_name:
        return formula
    pattern = re.compile(rf'(?<!{_NAME_CHAR}){re.escape(old_name)}(?!\w)')
    return pattern.sub(lambda _m: new_name, formula)


def rename_cross_form_field(formula, form_name, old_name, new_name):
    """Rewrite "Form.old" references to "Form.new" in another form's formula."""
    if not formula or not form_name or not old_name or not new_name or old_name == new_name:
        return formula
    pattern = re.compile(rf'(?<!{_NAME_CHAR}){re.escape(form_name)}\.{re.escape(old_name)}(?!\w)')
    return pattern.sub(lambda _m: f"{form_name}.{new_name}", formula)


def rename_form_references(formula, old_form_name, new_form_name):
    """Rewrite "Old.field" prefixes to "New.field"."""
    if not formula or not old_form_name or not new_form_name or old_form_name == new_form_name:
        return formula
    pattern = re.compile(rf'(?<!{_NAME_CHAR}){re.escape(old_form_name)}\.')
    return pattern.sub(lambda _m: f"{new_form_name}.", formula)


def _with_formulas(form, rewrite):
    changed = False
    fields = []
    for field in form.fields:
        if field.type == 'formula' and field.formula:
            updated = rewrite(field.formula)
            if updated != field.formula:
                field = field.model_copy(update={'formula': updated})
                changed = True
        fields.append(field)
    if not changed:
        return None
    return form.model_copy(update={'fields': fields})


def rename_field_in_forms(forms, form_id, old_name, new_name):
    """
    Rename a field and rewrite every formula that refers to it.

    Returns:
        dict form_id -> updated FormSchema, for the forms that changed
        (the renamed field's own form always included).
    """
    updated = {}
    for form in forms:
        if form.id == form_id:
            fields = [
                f.model_copy(update={'name': new_name}) if f.name == old_name else f
                for f in form.fields
            ]
            renamed = form.model_copy(update={'fields': fields})
            updated[form.id] = _with_formulas(
                renamed, lambda text: rename_field_references(text, old_name, new_name)
            ) or renamed
            owner_name = form.name
            break
    else:
        raise KeyError(form_id)

    for form in forms:
        if form.id == form_id:
            continue
        changed = _with_formulas(
            form, lambda text: rename_cross_form_field(text, owner_name, old_name, new_name)
        )
        if changed is not None:
            logger.debug("[RENAME] Updated formulas of form %s", form.id)
            updated[form.id] = changed
    return updated


def rename_form_in_forms(forms, old_form_name, new_form_name):
    """Rewrite cross-form references after a form rename; returns the changed forms by id."""
    updated = {}
    for form in forms:
        changed = _with_formulas(
            form, lambda text: rename_form_references(text, old_form_name, new_form_name)
        )
        if changed is not None:
            updated[form.id] = changed
    return updated
