from __future__ import annotations

import re
from datetime import date, datetime

from dateutil.parser import isoparse


_DMY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+\d{1,2}:\d{2}(?::\d{2})?)?$")


def parse_creation_date(value: object) -> date:
    """
    Parse the export's "Creacion" timestamp, e.g. "2025-01-02 09:21:57".

    Only the date portion is kept. Native `datetime`/`date` cells (openpyxl typed cells) are accepted as-is.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        raise ValueError("parse_creation_date: value is None")
    s = str(value).strip()
    if not s:
        raise ValueError("parse_creation_date: empty string")
    date_part = s.split(" ", 1)[0].split("T", 1)[0]
    try:
        return isoparse(date_part).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"parse_creation_date: not YYYY-MM-DD: {s!r}") from e


def parse_passage_date(value: object) -> date:
    """
    Parse the export's "F.Paso" timestamp, e.g. "02/01/2025 09:21:57" -> 2025-01-02.

    Day comes first. We never hand this to a locale-aware parser; those read "02/01" as Feb 1st.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        raise ValueError("parse_passage_date: value is None")
    s = str(value).strip()
    m = _DMY_RE.match(s)
    if not m:
        raise ValueError(f"parse_passage_date: not DD/MM/YYYY: {s!r}")
    day, month, year = (int(g) for g in m.groups())
    # date() rejects impossible combinations (e.g. 31/02) with ValueError.
    return date(year, month, day)
