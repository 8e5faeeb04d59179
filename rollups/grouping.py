from __future__ import annotations
from typing import Iterable, List, Sequence
from rollups.schemas import KeyPair, WindowKind

DELIMITER = "|"
MISSING_VALUE = "null"

def group_id(grouping_definition: str, attributes: Sequence[KeyPair]) -> str:
    """Resolve a grouping definition such as ``"country|city"`` against an
    event's attributes, e.g. ``"us|nyc"``.

    Keys and values compare lowercased; a key the event lacks resolves to
    ``"null"``. Values are joined as-is, so a value containing ``|`` can
    collide with a different attribute combination.
    """
    values = []
    for key in grouping_definition.split(DELIMITER):
        key = key.lower()
        value = MISSING_VALUE
        for kp in attributes:
            if kp.key.lower() == key:
                value = kp.value.lower()
                break
        values.append(value)
    return DELIMITER.join(values)

def nested_groupings(grouping_definition: str, all_groupings: Iterable[str]) -> List[str]:
    """Configured groupings that ``grouping_definition`` literally starts with.

    For ``"a|b|c|d"`` against ``["a", "a|b", "a|c", "a|b|c", "b|c", "a|b|c|d"]``
    the result is ``["a", "a|b", "a|b|c"]``. The test is a raw string prefix,
    not a token prefix.
    """
    out = []
    for candidate in all_groupings:
        if candidate != grouping_definition and grouping_definition.startswith(candidate):
            out.append(candidate)
    return out

def bucket_id(window: WindowKind, bucket_start: int, grouping_id: str) -> str:
    return f"{WindowKind(window)}{DELIMITER}{int(bucket_start)}{DELIMITER}{grouping_id}"
