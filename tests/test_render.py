from __future__ import annotations

import json
import re
from urllib.parse import unquote

from bs4 import BeautifulSoup

from bmk.render import (
    CSP_ERROR_MESSAGE,
    GENERAL_ERROR_MESSAGE,
    IndexEntry,
    render_bootstrap,
    render_index,
    render_missing_file_script,
)
from bmk.templates import embed_json, escape_html, one_line, remove_indent

SCRIPT_URL = "http://localhost:3300/file?filename=abc123"


def _decode(bookmarklet: str) -> str:
    assert bookmarklet.startswith("javascript:")
    return unquote(bookmarklet[len("javascript:") :])


def test_bootstrap_is_percent_encoded_single_uri() -> None:
    bookmarklet = render_bootstrap(SCRIPT_URL)
    payload = bookmarklet[len("javascript:") :]
    for forbidden in (" ", '"', "<", ">", "&", "\n"):
        assert forbidden not in payload


def test_bootstrap_appends_cache_busting_id() -> None:
    code = _decode(render_bootstrap(SCRIPT_URL))
    assert 'u=s.src="http://localhost:3300/file?filename=abc123&id="' in code
    assert "+new Date().getTime()+'-'+(Math.random()+'00000000').slice(2,9)" in code


def test_bootstrap_registers_three_listeners_and_removes_them_together() -> None:
    code = _decode(render_bootstrap(SCRIPT_URL))
    assert "A(s,'error'," in code
    assert "A(d,'securitypolicyviolation'," in code
    assert "A(s,'load',R)" in code
    assert "t.removeEventListener(n,f)" in code
    assert "function R(){E();V();L()}" in code


def test_bootstrap_filters_csp_violations_by_url_and_enforce() -> None:
    code = _decode(render_bootstrap(SCRIPT_URL))
    assert "e.blockedURI===u&&e.disposition==='enforce'" in code
    assert f"alert({embed_json(CSP_ERROR_MESSAGE)}),R()" in code
    assert f"alert({embed_json(GENERAL_ERROR_MESSAGE)});R()" in code


def test_bootstrap_attaches_then_detaches_script_tag() -> None:
    code = _decode(render_bootstrap(SCRIPT_URL))
    assert code.endswith("d.body.appendChild(s).parentNode.removeChild(s)})(document)")


def test_bootstrap_accepts_custom_messages() -> None:
    code = _decode(
        render_bootstrap(
            SCRIPT_URL,
            general_error_message="offline",
            csp_error_message="blocked",
        )
    )
    assert 'alert("offline")' in code
    assert 'alert("blocked")' in code


def test_bootstrap_messages_are_inserted_literally() -> None:
    code = _decode(
        render_bootstrap(
            SCRIPT_URL,
            general_error_message="see __BMK_CSP_ERROR__ and __BMK_URL__",
            csp_error_message="blocked",
        )
    )
    assert 'alert("see __BMK_CSP_ERROR__ and __BMK_URL__")' in code
    assert code.count("blocked") == 1


def test_index_has_one_escaped_item_per_entry() -> None:
    entries = [
        IndexEntry(display_name="[w] a.js", bookmarklet_href=render_bootstrap(SCRIPT_URL)),
        IndexEntry(display_name='[w] <b>&"x".js', bookmarklet_href="javascript:void%200"),
    ]
    html = render_index(entries)
    assert "&lt;b&gt;&amp;&#34;x&#34;.js" in html
    soup = BeautifulSoup(html, "html.parser")
    items = soup.find_all("li")
    assert len(items) == 2
    anchors = [item.find("a") for item in items]
    assert anchors[0]["href"] == entries[0].bookmarklet_href
    assert anchors[1].get_text() == '[w] <b>&"x".js'
    assert soup.title.get_text() == "Bookmarklets"


def test_index_without_entries_renders_empty_list() -> None:
    soup = BeautifulSoup(render_index([]), "html.parser")
    assert soup.find("ul") is not None
    assert soup.find_all("li") == []


def test_missing_file_script_is_single_alert_call() -> None:
    script = render_missing_file_script()
    match = re.fullmatch(r"alert\((.*)\)", script, flags=re.S)
    assert match is not None
    message = json.loads(match.group(1))
    assert "cannot be found" in message
    assert "register the bookmarklet again" in message


def test_template_helpers() -> None:
    assert escape_html("<a href='x'>&</a>") == "&lt;a href=&#39;x&#39;&gt;&amp;&lt;/a&gt;"
    assert embed_json("a\u2028b") == '"a\\u2028b"'
    assert remove_indent("\n    one\n      two\n\n    three\n") == "one\ntwo\nthree"
    assert one_line("\n  <p>\n    hi\n  </p>\n") == "<p>hi</p>"
