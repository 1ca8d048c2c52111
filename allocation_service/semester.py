import re
from collections import namedtuple
from datetime import date
from typing import List, Optional, Tuple

from .errors import InvalidSemester

SemesterTemplate = namedtuple(
    "SemesterTemplate", ["name", "start_month", "start_day", "end_month", "end_day"]
)

SEMESTER_TEMPLATES = (
    SemesterTemplate("Spring", 1, 10, 6, 30),
    SemesterTemplate("Fall", 7, 1, 12, 20),
)

_LABEL_RE = re.compile(r"^(Spring|Fall)\s+(\d{4})$")


def upcoming_semesters(count: int = 6, today: Optional[date] = None) -> List[str]:
    """
    Chronologically ordered labels of the current and following semesters.

    Before July the list starts with Spring of the current year, otherwise
    with Fall.

    >>> upcoming_semesters(3, date(2025, 3, 1))
    ['Spring 2025', 'Fall 2025', 'Spring 2026']
    """
    today = today or date.today()
    year = today.year
    index = 0 if today.month < SEMESTER_TEMPLATES[1].start_month else 1

    labels = []
    while len(labels) < count:
        labels.append(f"{SEMESTER_TEMPLATES[index].name} {year}")
        index += 1
        if index >= len(SEMESTER_TEMPLATES):
            index = 0
            year += 1
    return labels


def semester_dates(label: str) -> Tuple[date, date]:
    """
    Convert a label such as 'Spring 2025' into its first and last day.

    Raises
    ------
    InvalidSemester
        If the label is not '<Spring|Fall> <year>'.
    """
    match = _LABEL_RE.match((label or "").strip())
    if not match:
        raise InvalidSemester(f"Invalid semester format: {label!r}")

    name, year = match.group(1), int(match.group(2))
    template = next(t for t in SEMESTER_TEMPLATES if t.name == name)
    return (
        date(year, template.start_month, template.start_day),
        date(year, template.end_month, template.end_day),
    )
