"""Reference expressions between resources.

A reference has the form ``${<type>.<name>.<attribute>}``. A string that is
exactly one reference resolves to the referenced value unchanged; references
inside a longer string are interpolated as text.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List

REFERENCE_PATTERN = re.compile(
    r"\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_-]*)\}"
)


class Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (Unknown, ())


UNKNOWN = Unknown()


@dataclass(frozen=True)
class Reference:
    """Typed edge from one resource's attribute to another resource's attribute."""

    source_id: str
    attribute_path: str
    target_id: str
    target_attribute: str

    @property
    def expression(self) -> str:
        return "${" + f"{self.target_id}.{self.target_attribute}" + "}"


def find_references(value: Any, source_id: str, path: str) -> List[Reference]:
    """Collect every reference inside an attribute value, depth first."""
    found = []
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            resource_type, name, attribute = match.groups()
            found.append(Reference(
                source_id=source_id,
                attribute_path=path,
                target_id=f"{resource_type}.{name}",
                target_attribute=attribute,
            ))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            found.extend(find_references(item, source_id, f"{path}[{index}]"))
    elif isinstance(value, dict):
        for key, item in value.items():
            found.extend(find_references(item, source_id, f"{path}.{key}"))
    return found


def resolve_value(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Substitute references using ``lookup(target_id, attribute)``.

    ``lookup`` may return :data:`UNKNOWN`; an interpolated string containing an
    unknown part becomes unknown as a whole.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            resource_type, name, attribute = whole.groups()
            return lookup(f"{resource_type}.{name}", attribute)

        unknown = False

        def substitute(match):
            nonlocal unknown
            resource_type, name, attribute = match.groups()
            resolved = lookup(f"{resource_type}.{name}", attribute)
            if resolved is UNKNOWN:
                unknown = True
                return ""
            if isinstance(resolved, (dict, list)):
                return json.dumps(resolved, sort_keys=True)
            return str(resolved)

        result = REFERENCE_PATTERN.sub(substitute, value)
        return UNKNOWN if unknown else result
    if isinstance(value, list):
        return [resolve_value(item, lookup) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    return False
