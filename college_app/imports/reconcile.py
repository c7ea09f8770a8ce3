"""Bulk import reconciliation.

A run parses the upload, drops the header line, and pushes every data row
through mapping, department resolution and the create operation, one row at
a time and in file order. Row failures are collected with their line number
and never stop the run; only structural problems (unreadable or empty
upload, too many rows) abort it. Rows created before a later failure stay
created.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import RecordError, StructuralImportError, PARSE, PERSISTENCE, RESOLUTION
from .parsing import decode_upload, parse_lines
from .records import get_layout, map_row

logger = logging.getLogger(__name__)

Persist = Callable[[object], Tuple[object, Optional[str]]]


class ReferenceIndex:
    """Read-only, case-insensitive name -> identifier lookup."""

    def __init__(self, mapping: Optional[Dict[str, object]] = None):
        self._index: Dict[str, object] = {}
        for name, ident in (mapping or {}).items():
            key = self._key(name)
            if key:
                self._index[key] = ident

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, object]]):
        return cls(dict(pairs))

    @staticmethod
    def _key(name) -> str:
        return str(name or "").strip().casefold()

    def __len__(self):
        return len(self._index)

    def __contains__(self, name):
        return self._key(name) in self._index

    def lookup(self, name):
        return self._index.get(self._key(name))

    def resolve(self, name):
        ident = self.lookup(name)
        if ident is None:
            raise RecordError(RESOLUTION, f'Department "{str(name or "").strip()}" not found')
        return ident


@dataclass
class LineError:
    line_no: int
    kind: str
    message: str

    def __str__(self):
        return f"Line {self.line_no}: {self.message}"


@dataclass
class ImportOutcome:
    record_type: str
    dry_run: bool = False
    success_count: int = 0
    errors: List[LineError] = field(default_factory=list)
    log_id: Optional[int] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def processed_count(self) -> int:
        return self.success_count + self.error_count

    def record_success(self):
        self.success_count += 1

    def record_error(self, line_no: int, kind: str, message: str):
        self.errors.append(LineError(line_no, kind, message))

    def messages(self) -> List[str]:
        return [str(e) for e in self.errors]

    def to_report(self) -> dict:
        return {
            "record_type": self.record_type,
            "dry_run": self.dry_run,
            "total": self.processed_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": self.messages(),
        }

    def as_text(self) -> str:
        return report_text(self.success_count, self.messages(), dry_run=self.dry_run)


def report_text(success_count: int, messages: List[str], dry_run: bool = False) -> str:
    """Plain text summary: counts first, then one "Line N: ..." entry per failure."""
    verb = "would succeed" if dry_run else "succeeded"
    lines = [f"{success_count} records {verb}", f"{len(messages)} errors occurred"]
    lines.extend(messages)
    return "\n".join(lines) + "\n"


def _persist_row(persist: Persist, row) -> Optional[str]:
    try:
        result = persist(row)
    except Exception as e:
        logger.warning("Create failed for %s: %s", getattr(row, "email", "?"), e)
        return str(e) or e.__class__.__name__
    if isinstance(result, tuple) and len(result) == 2:
        _, error = result
        return str(error) if error else None
    return None


def reconcile(text: str, record_type, reference: ReferenceIndex, persist: Optional[Persist] = None,
              dry_run: bool = False, max_rows: Optional[int] = None) -> ImportOutcome:
    layout = get_layout(record_type)
    rows = parse_lines(text)
    if not rows:
        raise StructuralImportError("The uploaded file is empty.")
    data_rows = rows[1:]
    if max_rows is not None and len(data_rows) > max_rows:
        raise StructuralImportError(f"Too many rows: {len(data_rows)} (max {max_rows}).")
    if persist is None and not dry_run:
        raise ValueError("persist is required unless dry_run is set")

    outcome = ImportOutcome(record_type=layout.record_type, dry_run=dry_run)
    logger.info("Reconciling %d %s rows (dry_run=%s)", len(data_rows), layout.record_type, dry_run)
    for parsed in data_rows:
        if parsed.error:
            outcome.record_error(parsed.line_no, PARSE, parsed.error)
            continue
        try:
            row = map_row(parsed.fields, layout.record_type, reference)
        except RecordError as e:
            outcome.record_error(parsed.line_no, e.kind, e.message)
            continue
        if dry_run:
            outcome.record_success()
            continue
        error = _persist_row(persist, row)
        if error:
            outcome.record_error(parsed.line_no, PERSISTENCE, error)
        else:
            outcome.record_success()
    logger.info("Reconciled %s: %d ok, %d errors", layout.record_type, outcome.success_count, outcome.error_count)
    return outcome


def run_import(raw, record_type, reference: ReferenceIndex, persist: Optional[Persist] = None,
               dry_run: bool = False, max_rows: Optional[int] = None) -> ImportOutcome:
    """Decode an uploaded file and reconcile it.

    Raises StructuralImportError when the file cannot be read or has no
    lines at all.
    """
    text = decode_upload(raw)
    return reconcile(text, record_type, reference, persist, dry_run=dry_run, max_rows=max_rows)
