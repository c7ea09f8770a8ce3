"""Comma separated text parsing for bulk uploads.

Each physical line is one row; lines end with LF, CRLF or a lone CR. A
double quote toggles quoted mode, and a comma inside a quoted span is kept
as text. Quote characters are not part of the field value. Fields are
trimmed and blank lines are skipped.

Quoted fields cannot span lines: an odd number of quotes on a line is
reported for that line as an unterminated quoted field.
"""
import logging
import re
from typing import List, NamedTuple, Optional

from ..errors import StructuralImportError

logger = logging.getLogger(__name__)

DELIMITER = ","
QUOTE = '"'
LINE_BREAK = re.compile(r"\r\n|\r|\n")


class ParsedLine(NamedTuple):
    line_no: int
    fields: List[str]
    error: Optional[str] = None


def split_line(line: str):
    """Split one line into trimmed fields.

    Returns (fields, unterminated) where unterminated is True when the line
    ended inside a quoted span.
    """
    fields = []
    current = []
    in_quotes = False
    for ch in line:
        if ch == QUOTE:
            in_quotes = not in_quotes
        elif ch == DELIMITER and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    fields.append("".join(current).strip())
    return fields, in_quotes


def parse_lines(text: str) -> List[ParsedLine]:
    rows: List[ParsedLine] = []
    for idx, line in enumerate(LINE_BREAK.split(text or ""), start=1):
        if not line.strip():
            continue
        fields, unterminated = split_line(line)
        error = "Unterminated quoted field" if unterminated else None
        rows.append(ParsedLine(idx, fields, error))
    return rows


def parse_csv(text: str) -> List[List[str]]:
    """Rows of trimmed fields, blank lines dropped."""
    return [row.fields for row in parse_lines(text)]


def decode_upload(raw) -> str:
    if raw is None:
        raise StructuralImportError("No file content received.")
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            logger.warning("Upload is not valid UTF-8: %s", e)
            raise StructuralImportError("Failed to read the file. Save it as UTF-8 CSV and try again.") from e
    if not text.strip():
        raise StructuralImportError("The uploaded file is empty.")
    return text
