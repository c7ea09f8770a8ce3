"""Exceptions raised by the bulk import pipeline."""

PARSE = "parse"
VALIDATION = "validation"
RESOLUTION = "resolution"
PERSISTENCE = "persistence"

RECORD_ERROR_KINDS = (PARSE, VALIDATION, RESOLUTION, PERSISTENCE)


class BulkImportError(Exception):
    """Base class for bulk import failures."""


class StructuralImportError(BulkImportError):
    """The upload as a whole cannot be processed (unreadable, empty, too large).

    Aborts the run; no record-level outcome is produced.
    """


class RecordError(BulkImportError):
    """A single record failed; the run records it and moves on."""

    def __init__(self, kind, message):
        if kind not in RECORD_ERROR_KINDS:
            raise ValueError(f"unknown record error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
