from __future__ import annotations

import re
from collections.abc import Iterable

DEFAULT_MAX_CHARS = 20000

# &amp; is decoded last so "&amp;lt;" stays a literal "&lt;".
_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&nbsp;", " "),
    ("&amp;", "&"),
)

_IMG_TAG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_ANCHOR_RE = re.compile(
    r"""<a\b[^>]*?\bhref\s*=\s*(["'])(?P<href>.*?)\1[^>]*>(?P<inner>.*?)</a\s*>""",
    re.IGNORECASE | re.DOTALL,
)


def decode_entities(text: str) -> str:
    for entity, replacement in _ENTITIES:
        text = text.replace(entity, replacement)
    return text


def strip_images(html: str) -> str:
    return _IMG_TAG_RE.sub("", html)


def unwrap_tracker_links(html: str, tracker_domains: Iterable[str]) -> str:
    domains = [domain.lower() for domain in tracker_domains if domain]
    if not domains:
        return html

    def replace(match: re.Match[str]) -> str:
        href = match.group("href").lower()
        if any(domain in href for domain in domains):
            return match.group("inner")
        return match.group(0)

    return _ANCHOR_RE.sub(replace, html)


def normalize_content_html_clean(
    raw: str | None,
    *,
    tracker_domains: Iterable[str] = (),
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    if not raw:
        return ""
    html = decode_entities(str(raw))
    html = strip_images(html)
    html = unwrap_tracker_links(html, tracker_domains)
    return html[: max(0, max_chars)]
