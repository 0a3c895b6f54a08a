"""Parsing and structural validation of the CSV task source."""

from __future__ import annotations

import csv
import io

from annotation_service.core.exceptions import ValidationError
from annotation_service.services.records import COL_ID, TaskRow


def parse_csv(text: str) -> list[list[str]]:
    """Split CSV text into trimmed cells, dropping blank lines."""
    reader = csv.reader(io.StringIO(text))
    rows: list[list[str]] = []
    for raw in reader:
        row = [cell.strip() for cell in raw]
        if any(row):
            rows.append(row)
    return rows


def validate_rows(rows: list[list[str]]) -> None:
    """
    Check that the table has a header and that every row matches its width.

    Raises:
        ValidationError: INVALID_CSV for an empty table or missing header,
                         CSV_STRUCTURE_INVALID for rows of the wrong width
    """
    if not rows:
        raise ValidationError("Invalid or empty CSV file", error="INVALID_CSV")

    header = rows[0]
    if not header or not any(header):
        raise ValidationError("CSV header is missing or invalid", error="INVALID_CSV")

    # Row numbers are 1-based and count the header as row 1
    invalid = [number for number, row in enumerate(rows[1:], start=2) if len(row) != len(header)]
    if invalid:
        raise ValidationError(
            "CSV structure validation failed",
            error="CSV_STRUCTURE_INVALID",
            details={
                "rows": invalid,
                "invalidRowCount": len(invalid),
                "expectedColumns": len(header),
            },
        )


def load_task_rows(text: str) -> list[TaskRow]:
    """Parse and validate CSV text into task rows (header excluded)."""
    rows = parse_csv(text)
    validate_rows(rows)
    header = tuple(rows[0])
    return [
        TaskRow(
            id=row[COL_ID].strip() if row else "",
            index=position,
            data=tuple(row),
            header=header,
        )
        for position, row in enumerate(rows[1:], start=1)
    ]
