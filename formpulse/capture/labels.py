from typing import Mapping, Optional

from ..events import UNKNOWN_FIELD

# attribute fallback order for naming a field
LABEL_ATTRS = ("name", "id", "placeholder", "type")


def resolve_field_label(attrs: Mapping[str, Optional[str]]) -> str:
    """First non-blank of name, id, placeholder, type; "unknown" otherwise.

    Only element attributes are consulted, never the field's value.
    """
    for key in LABEL_ATTRS:
        v = attrs.get(key)
        if v is None:
            continue
        v = str(v).strip()
        if v:
            return v
    return UNKNOWN_FIELD
