from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .templates import embed_json, encode_uri_component, escape_html, one_line, remove_indent

MESSAGE_PREFIX = "[bmk]"

GENERAL_ERROR_MESSAGE = remove_indent(
    f"""
    {MESSAGE_PREFIX}
    An error has occurred while loading the script.
    The following are possible reasons.
    - `bmk watch` is not running.
    - The build has not finished yet.
    - Access to the local server has been blocked from this page.
    """
)

CSP_ERROR_MESSAGE = remove_indent(
    f"""
    {MESSAGE_PREFIX}
    The script has been blocked by the CSP configured on this page.
    Therefore, the dynamic scripting feature cannot be used on this page.
    """
)

MISSING_FILE_MESSAGE = remove_indent(
    f"""
    {MESSAGE_PREFIX}
    The requested filename cannot be found.
    Please reload the registration page and register the bookmarklet again.
    """
)

INDEX_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Bookmarklets</title>
</head>
<body style="font:18px sans-serif;margin:20px">
  <p>You can drag the following bookmarklets and register for the bookmark.</p>
  <ul>__BMK_ITEMS__</ul>
</body>
</html>
"""

# Cache-busting id, listener registration and cleanup for the loader tag.
BOOTSTRAP_JS = """
(function(d){
  var s=d.createElement('script'),
      u=s.src=__BMK_URL__
        +new Date().getTime()+'-'+(Math.random()+'00000000').slice(2,9),
      E=A(s,'error',function(){
        alert(__BMK_GENERAL_ERROR__);
        R()
      }),
      V=A(d,'securitypolicyviolation',function(e){
        e.blockedURI===u
          &&e.disposition==='enforce'
          &&(alert(__BMK_CSP_ERROR__),R())
      }),
      L=A(s,'load',R);
  function A(t,n,f){
    t.addEventListener(n,f);
    return function(){
      t.removeEventListener(n,f)
    }
  }
  function R(){
    E();
    V();
    L()
  }
  d.body.appendChild(s).parentNode.removeChild(s)
})(document)
"""

_PLACEHOLDER_RE = re.compile(r"__BMK_(?:URL|GENERAL_ERROR|CSP_ERROR)__")


@dataclass(frozen=True, slots=True)
class IndexEntry:
    display_name: str
    bookmarklet_href: str


def render_list_page(items: Iterable[str]) -> str:
    return one_line(INDEX_HTML).replace("__BMK_ITEMS__", "".join(items))


def render_index(entries: Iterable[IndexEntry]) -> str:
    """
    Render the registration page: one draggable link per entry.

    Display names are HTML-escaped. The hrefs are ``javascript:`` URIs whose
    payload is already percent-encoded, so they are emitted as they are.
    """
    items = (
        f'<li><a href="{entry.bookmarklet_href}">{escape_html(entry.display_name)}</a></li>'
        for entry in entries
    )
    return render_list_page(items)


def render_bootstrap(
    script_url: str,
    *,
    general_error_message: str = GENERAL_ERROR_MESSAGE,
    csp_error_message: str = CSP_ERROR_MESSAGE,
) -> str:
    """
    Return the ``javascript:`` bookmarklet that loads ``script_url`` as an
    external script tag.

    ``script_url`` must already carry a query string; the loader appends
    ``&id=<timestamp>-<random>`` to bypass caches on every click.
    """
    substitutions = {
        "__BMK_URL__": embed_json(f"{script_url}&id="),
        "__BMK_GENERAL_ERROR__": embed_json(general_error_message),
        "__BMK_CSP_ERROR__": embed_json(csp_error_message),
    }
    code = _PLACEHOLDER_RE.sub(lambda match: substitutions[match.group(0)], one_line(BOOTSTRAP_JS))
    return f"javascript:{encode_uri_component(code)}"


def render_missing_file_script(message: str = MISSING_FILE_MESSAGE) -> str:
    return f"alert({embed_json(message)})"


__all__ = [
    "CSP_ERROR_MESSAGE",
    "GENERAL_ERROR_MESSAGE",
    "IndexEntry",
    "MISSING_FILE_MESSAGE",
    "render_bootstrap",
    "render_index",
    "render_list_page",
    "render_missing_file_script",
]
