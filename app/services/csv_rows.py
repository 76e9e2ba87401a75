import csv
import logging
import re

from app.services.column_strategies import HEADER_KEYWORDS, normalize_label
from app.services.phone_normalizer import is_phone_shaped


logger = logging.getLogger(__name__)

DELIMITERS = (",", "\t", ";", "|")
_NUMERIC_CELL = re.compile(r"^\+?[\d\s\-().]+$")


def detect_delimiter(line: str) -> str:
    detected = ","
    max_count = 0
    for delimiter in DELIMITERS:
        count = line.count(delimiter)
        if count > max_count:
            max_count = count
            detected = delimiter
    return detected


def looks_like_header(cells: list[str]) -> bool:
    # a phone number means customer data, even next to a name like "Telford"
    if any(is_phone_shaped(cell) for cell in cells if cell):
        return False
    if any(normalize_label(cell).startswith(HEADER_KEYWORDS) for cell in cells if cell):
        return True
    non_empty = [cell for cell in cells if cell]
    return bool(non_empty) and all(not _NUMERIC_CELL.match(cell) for cell in non_empty)


def _unique_labels(cells: list[str]) -> list[str]:
    labels: list[str] = []
    seen: set[str] = set()
    for idx, cell in enumerate(cells):
        label = cell or f"column{idx}"
        if label in seen:
            label = f"{label}_{idx}"
        seen.add(label)
        labels.append(label)
    return labels


def parse_csv_text(text: str) -> list[dict[str, str]]:
    """
    Turns an uploaded file into rows keyed by column label.

    Files without a header line are keyed by column position ("0", "1", ...)
    so downstream header detection sees bare indices.
    """
    text = text.lstrip("\ufeff")
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return []

    delimiter = detect_delimiter(lines[0])
    matrix = [[cell.strip() for cell in row] for row in csv.reader(lines, delimiter=delimiter)]

    first = matrix[0]
    if looks_like_header(first):
        labels = _unique_labels(first)
        rows = [
            {label: (row[idx] if idx < len(row) else "") for idx, label in enumerate(labels)}
            for row in matrix[1:]
        ]
        logger.info("csv parsed with header", extra={"delimiter": delimiter, "rows": len(rows), "labels": labels})
    else:
        width = max(len(row) for row in matrix)
        rows = [
            {str(idx): (row[idx] if idx < len(row) else "") for idx in range(width)}
            for row in matrix
        ]
        logger.info("csv parsed without header", extra={"delimiter": delimiter, "rows": len(rows)})

    return rows
