"""External id normalization.

Classifiers echo ids back with different spacing and percent-encoding than the
page link they were scraped from. Every lookup goes through the fixed set of
variant generators below instead of ad hoc string munging at call sites.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import parse_qs, quote, unquote, urlparse

WHITESPACE_RE = re.compile(r"\s+")
# encodeURIComponent's unreserved set, minus the apostrophe which page links encode.
_QUOTE_SAFE = "-_.!~*()"


def extract_external_id(value: str) -> str:
    """Return the article id from a bare id, a ``/wiki/<id>`` path or an ``index.php?title=<id>`` link."""
    candidate = (value or "").strip()
    if not candidate:
        return ""

    parsed = urlparse(candidate)
    if "/wiki/" in parsed.path:
        return parsed.path.split("/wiki/", maxsplit=1)[1].strip()

    if parsed.query:
        titles = parse_qs(parsed.query, keep_blank_values=False).get("title")
        if titles:
            # parse_qs decodes; re-encode apostrophes so the id matches link form.
            return canonical_external_id(titles[0])

    return candidate


def canonical_external_id(value: str) -> str:
    return WHITESPACE_RE.sub("_", (value or "").strip()).replace("'", "%27")


def _safe_unquote(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def id_variants(value: str) -> list[str]:
    base = extract_external_id(value)
    if not base:
        return []

    decoded = _safe_unquote(base)
    underscored = WHITESPACE_RE.sub("_", decoded)
    generated = [
        base,
        WHITESPACE_RE.sub("_", base),
        base.replace("_", " "),
        decoded,
        underscored,
        decoded.replace("_", " "),
        underscored.replace("'", "%27"),
        quote(underscored, safe=_QUOTE_SAFE),
        quote(underscored, safe=_QUOTE_SAFE + "'"),
    ]

    variants: list[str] = []
    seen: set[str] = set()
    for item in generated:
        if item and item not in seen:
            seen.add(item)
            variants.append(item)
    return variants


def build_alias_map(candidate_ids: Iterable[str]) -> dict[str, str]:
    """Map every spelling variant (and its case-folded form) to the stored id.

    Exact variants of earlier ids win over later ones so collisions never remap
    a candidate that was already registered.
    """
    aliases: dict[str, str] = {}
    folded: dict[str, str] = {}
    for candidate_id in candidate_ids:
        if not candidate_id:
            continue
        for variant in id_variants(candidate_id):
            aliases.setdefault(variant, candidate_id)
            folded.setdefault(variant.casefold(), candidate_id)
    for key, candidate_id in folded.items():
        aliases.setdefault(key, candidate_id)
    return aliases


def resolve_alias(aliases: dict[str, str], raw_id: str) -> str | None:
    for variant in id_variants(raw_id):
        match = aliases.get(variant)
        if match is not None:
            return match
    for variant in id_variants(raw_id):
        match = aliases.get(variant.casefold())
        if match is not None:
            return match
    return None
