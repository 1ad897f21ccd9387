"""Name and option normalization for user-entered metadata."""

from __future__ import annotations

import re
from typing import List

ENTITY_NAME_RE = re.compile(r"^[a-z0-9_]+$")
SYSTEM_COLUMNS = ("id", "created_at", "created_by")

_WHITESPACE_RE = re.compile(r"\s+")


def slugify_name(text: str) -> str:
    """Lowercase ``text`` and collapse each whitespace run into one underscore.

    Leading and trailing whitespace is not stripped, so ``" a"`` becomes ``"_a"``.
    """
    return _WHITESPACE_RE.sub("_", (text or "").lower())


def is_valid_entity_name(name: str) -> bool:
    return isinstance(name, str) and bool(ENTITY_NAME_RE.match(name))


def parse_options(text: str | None) -> List[dict]:
    """Parse a comma separated option list into ``{label, value}`` pairs.

    Empty tokens are kept; field definition validation reports them.
    """
    if text is None:
        return []
    options = []
    for token in text.split(","):
        label = token.strip()
        options.append({"label": label, "value": slugify_name(label)})
    return options


def singular_label(label: str) -> str:
    if isinstance(label, str) and label.endswith("s"):
        return label[:-1]
    return label
