from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Optional

from plate_app.engine.plugin_api import FilenameFormatError


def sniff_locale(sample: str) -> Dict[str, str]:
    """Infer delimiter and decimal separator from a CSV text sample.

    Plate reader software exports with the workstation locale, so a
    semicolon delimited file with decimal commas is as common as a plain
    comma separated one. A semicolon or tab present on every line wins over
    the comma; decimal commas are only considered for those delimiters.
    """

    if not sample:
        return {"decimal": ".", "delimiter": ","}

    lines = [ln for ln in sample.splitlines() if ln.strip()][:50]
    trimmed = "\n".join(lines)

    delimiter = ","
    for candidate in (";", "\t"):
        if all(candidate in line for line in lines):
            delimiter = candidate
            break

    decimal = "."
    if delimiter != ",":
        dot_matches = re.findall(r"\d\.\d", trimmed)
        comma_matches = re.findall(r"\d,\d", trimmed)
        if len(comma_matches) > len(dot_matches):
            decimal = ","

    return {"decimal": decimal, "delimiter": delimiter}


@dataclass(frozen=True)
class FilenameFields:
    filename: str
    date: date
    plate_id: Optional[str] = None
    groups: Dict[str, str] = field(default_factory=dict)


def parse_plate_filename(
    filename: str | Path,
    pattern: str | re.Pattern,
    date_format: str = "%Y-%m-%d",
) -> FilenameFields:
    """Extract the date (and plate id, when present) from ``filename``.

    ``pattern`` must define a ``date`` named group; a ``plate_id`` group is
    optional. Anything that does not match, or a date that does not parse
    with ``date_format``, raises :class:`FilenameFormatError`.
    """

    name = Path(filename).name
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
    match = compiled.fullmatch(name)
    if match is None:
        raise FilenameFormatError(f"Filename {name!r} does not match pattern {compiled.pattern!r}")
    groups = {key: value for key, value in match.groupdict().items() if value is not None}
    raw_date = groups.get("date")
    if raw_date is None:
        raise FilenameFormatError(f"Filename {name!r} has no date field")
    try:
        parsed = datetime.strptime(raw_date, date_format).date()
    except ValueError as exc:
        raise FilenameFormatError(f"Filename {name!r}: invalid date {raw_date!r} ({exc})") from exc
    return FilenameFields(filename=name, date=parsed, plate_id=groups.get("plate_id"), groups=groups)
