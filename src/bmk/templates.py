from __future__ import annotations

import json
from urllib.parse import quote

# Characters encodeURIComponent leaves untouched besides alphanumerics and "-_.~".
_URI_COMPONENT_SAFE = "!*'()"


def escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace('"', "&#34;")
        .replace("'", "&#39;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def embed_json(data: object) -> str:
    """Serialize ``data`` as JSON that is also safe inside a JavaScript source."""
    encoded = json.dumps(data, ensure_ascii=False)
    return encoded.replace("\u2028", "\\u2028").replace("\u2029", "\\u2029")


def encode_uri_component(text: str) -> str:
    return quote(text, safe=_URI_COMPONENT_SAFE)


def remove_indent(text: str) -> str:
    """Strip the leading whitespace of every line and trim the result."""
    return "\n".join(line.lstrip() for line in text.strip().splitlines() if line.strip())


def one_line(text: str) -> str:
    """Collapse an indented multi-line template into a single line."""
    return "".join(line.strip() for line in text.splitlines())


__all__ = ["embed_json", "encode_uri_component", "escape_html", "one_line", "remove_indent"]
