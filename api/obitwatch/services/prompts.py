from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

INPUT_HEADER = "Input (each line: name, age, description, cause of death, wiki_path):"
INPUT_BLOCK_RE = re.compile(r"Input \(each line:[^\n]*\n\n([\s\S]*?)\n----")
OVERRIDE_BLOCK_RE = re.compile(r"\*\*Important override:\*\*[^\n]*\n\n([^\n]*)")
BLANK_LINES_RE = re.compile(r"\n\n+")
# Page ids may contain bare commas (`Name_(politician,_born_1940)`) but never spaces.
FIELD_SEPARATOR = ", "

SYSTEM_PROMPT = "Output strictly JSON and nothing else. Return an object with selected/rejected arrays."

_CRITERIA = [
    "You are a filter for notable deaths for a U.S. audience. Input is a list of people with `name`, `age`, "
    "`description`, `cause of death`, and `wiki_path`.",
    "",
    "**Task:** Return only JSON. Include people if they are:",
    "",
    "* Major U.S. pro or college athletes (NFL, NBA, MLB, NHL, WWE, PGA, NCAA, FIFA), Olympic medalists or "
    "notable Olympic athletes, or global stars with strong U.S. coverage.",
    "",
    "* Widely known in film, TV, pop music, Internet media including YouTube, entertainment, media or commercials.",
    "",
    "* High-profile business leaders, artists, performers, scientists, technologists, politicians, or notorious "
    "criminals.",
    "",
    "Exclude obscure or regional figures. Prefer U.S. relevance; lower weight if fame is outside U.S.",
]

_OUTPUT_FORMAT = [
    "**Output format:** JSON object with fields:",
    "",
    "* `selected`: array of objects with fields `name`, `age`, `description` (10-25 words, why notable to U.S. "
    'public), `cause_of_death` (or "unknown"), `wiki_path`',
    "* `rejected`: array of objects with fields `wiki_path` and optional `reason` (<= 10 words)",
    "",
    "Place every input line into exactly one of `selected` or `rejected`.",
    'If no matches, return `{"selected":[],"rejected":[...]}`. Output strictly JSON, nothing else.',
]


def _clean(values: Iterable[str]) -> list[str]:
    return [value.strip() for value in values if value and value.strip()]


def format_record_line(record: Mapping[str, Any]) -> str:
    age = record.get("age")
    parts = [
        str(record.get("name") or ""),
        str(age) if isinstance(age, int) and not isinstance(age, bool) else "",
        str(record.get("description") or ""),
        str(record.get("cause") or ""),
        str(record.get("external_id") or ""),
    ]
    # The id is always the last field; descriptions may contain commas.
    return FIELD_SEPARATOR.join(part.strip() for part in parts if part.strip())


def build_prompt(records: Sequence[Mapping[str, Any]], forced_ids: Iterable[str] = ()) -> str:
    lines = [format_record_line(record) for record in records]
    forced = _clean(forced_ids)

    sections: list[str] = [*_CRITERIA, ""]
    if forced:
        sections.extend(
            [
                "",
                "**Important override:** The following `wiki_path` IDs MUST be included in the output regardless "
                "of typical notability criteria. If they appear in the input, include them with a concise "
                "description and cause of death:",
                "",
                FIELD_SEPARATOR.join(forced),
                "",
            ]
        )
    sections.extend(_OUTPUT_FORMAT)
    sections.extend(["", "----", INPUT_HEADER, "", "\n\n".join(lines), "----"])
    return "\n".join(sections)


def candidate_ids_from_prompt(prompt: str) -> list[str]:
    """Recover the candidate ids from a prompt when callback metadata is missing."""
    match = INPUT_BLOCK_RE.search(prompt or "")
    if not match:
        return []
    block = match.group(1)
    candidates: list[str] = []
    for line in BLANK_LINES_RE.split(block):
        line = line.strip()
        if not line:
            continue
        candidates.append(line.rsplit(FIELD_SEPARATOR, maxsplit=1)[-1].strip())
    return _clean(candidates)


def forced_ids_from_prompt(prompt: str) -> list[str]:
    match = OVERRIDE_BLOCK_RE.search(prompt or "")
    if not match:
        return []
    return split_id_list(match.group(1))


def split_id_list(raw: str) -> list[str]:
    return _clean(raw.split(FIELD_SEPARATOR))
