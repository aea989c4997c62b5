"""Tag storage and machine-tag handling.

Tags are stored as a JSON array in a text column.  Machine tags have the
form ``namespace:predicate=value`` (e.g. ``plancast:place=1520153``) and
identify a record across import sources.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Iterable, Optional

MACHINE_TAG_RE = re.compile(
    r"^(?P<namespace>[a-z][a-z0-9_]*):(?P<predicate>[a-z][a-z0-9_]*)=(?P<value>\S.*)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class MachineTag:
    namespace: str
    predicate: str
    value: str

    def __str__(self) -> str:
        return f"{self.namespace}:{self.predicate}={self.value}"


def parse_machine_tag(tag: str) -> Optional[MachineTag]:
    """Return the parsed machine tag, or None for an ordinary tag."""
    m = MACHINE_TAG_RE.match(tag.strip()) if tag else None
    if not m:
        return None
    return MachineTag(m.group("namespace").lower(), m.group("predicate").lower(), m.group("value"))


def machine_tag(namespace: str, predicate: str, value) -> str:
    return str(MachineTag(namespace, predicate, str(value)))


def machine_tags(tags: Iterable[str]) -> list[MachineTag]:
    """Return the machine tags among *tags*, in order."""
    return [mt for mt in (parse_machine_tag(t) for t in tags) if mt is not None]


def normalise_tags(tags: Iterable[str] | None) -> list[str]:
    """Strip whitespace, drop blanks and duplicates, keep first-seen order."""
    result: list[str] = []
    seen: set[str] = set()
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def merge_tags(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    return normalise_tags([*existing, *incoming])


def serialize_tags(tags: Iterable[str] | None) -> Optional[str]:
    """Convert list of tags to JSON string for storage."""
    tags = normalise_tags(tags)
    if not tags:
        return None
    return json.dumps(tags, sort_keys=False)


def deserialize_tags(tags_json: Optional[str]) -> list[str]:
    """Convert JSON string back to list of tags."""
    if not tags_json:
        return []
    try:
        tags = json.loads(tags_json)
        return tags if isinstance(tags, list) else []
    except json.JSONDecodeError:
        return []
