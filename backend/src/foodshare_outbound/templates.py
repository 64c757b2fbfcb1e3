from __future__ import annotations

import re
from typing import Any, Mapping

_MUSTACHE_RE = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
_GO_TEMPLATE_RE = re.compile(r"\{\{\s*\.([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def replace_variables(content: str, variables: Mapping[str, Any], *, strip_undefined: bool = False) -> str:
    """Substitute ``{{name}}`` and ``{{ .Name }}`` placeholders.

    Unknown placeholders are left in place unless ``strip_undefined`` is set.
    """

    def _substitute(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        if value is not None:
            return str(value)
        return "" if strip_undefined else match.group(0)

    rendered = _MUSTACHE_RE.sub(_substitute, content)
    return _GO_TEMPLATE_RE.sub(_substitute, rendered)
