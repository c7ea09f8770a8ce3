from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..errors import RecordError, VALIDATION

STUDENTS = "students"
TEACHERS = "teachers"


@dataclass
class StudentImportRow:
    name: str
    email: str
    mobile: str
    department: str
    semester: str
    section: str
    password: str = ""
    department_id: Optional[int] = None


@dataclass
class TeacherImportRow:
    name: str
    email: str
    mobile: str
    department: str
    qualification: str = ""
    experience: str = ""
    subjects: List[str] = field(default_factory=list)
    password: str = ""
    department_id: Optional[int] = None


@dataclass(frozen=True)
class RecordLayout:
    record_type: str
    columns: Tuple[Tuple[str, str], ...]  # (attribute, header label)
    required: Tuple[str, ...]
    example: Tuple[str, ...]
    row_class: type

    @property
    def headers(self) -> List[str]:
        return [label for _, label in self.columns]

    def label_for(self, attr: str) -> str:
        for name, label in self.columns:
            if name == attr:
                return label
        return attr


LAYOUTS: Dict[str, RecordLayout] = {
    STUDENTS: RecordLayout(
        record_type=STUDENTS,
        columns=(
            ("name", "Name"),
            ("email", "Email"),
            ("mobile", "Mobile"),
            ("department", "Department"),
            ("semester", "Semester"),
            ("section", "Section"),
            ("password", "Password"),
        ),
        required=("name", "email", "mobile", "department", "semester", "section"),
        example=("John Doe", "john@example.com", "1234567890", "Computer Science", "1st", "A", "password123"),
        row_class=StudentImportRow,
    ),
    TEACHERS: RecordLayout(
        record_type=TEACHERS,
        columns=(
            ("name", "Name"),
            ("email", "Email"),
            ("mobile", "Mobile"),
            ("department", "Department"),
            ("qualification", "Qualification"),
            ("experience", "Experience"),
            ("subjects", "Subjects"),
            ("password", "Password"),
        ),
        required=("name", "email", "mobile", "department"),
        example=(
            "Dr. Jane Smith",
            "jane@example.com",
            "0987654321",
            "Computer Science",
            "Ph.D. Computer Science",
            "5 years",
            "Programming, Algorithms",
            "password123",
        ),
        row_class=TeacherImportRow,
    ),
}

_ALIASES = {"student": STUDENTS, "students": STUDENTS, "teacher": TEACHERS, "teachers": TEACHERS}


def normalize_record_type(value) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned not in _ALIASES:
        raise ValueError(f"Unknown record type: {value!r}")
    return _ALIASES[cleaned]


def get_layout(record_type) -> RecordLayout:
    return LAYOUTS[normalize_record_type(record_type)]


def split_subjects(raw: str) -> List[str]:
    # ";" takes precedence over ","
    sep = ";" if ";" in (raw or "") else ","
    return [s.strip() for s in (raw or "").split(sep) if s.strip()]


def map_row(fields: List[str], record_type, reference=None):
    """Map one positional row onto the record type's tagged row.

    Missing trailing optional columns are allowed; extra columns are
    ignored. The first empty required column raises a validation
    RecordError. When a reference index is given the department is
    resolved (which may raise a resolution RecordError).
    """
    layout = get_layout(record_type)
    values = {}
    for idx, (attr, _) in enumerate(layout.columns):
        values[attr] = (fields[idx] if idx < len(fields) else "").strip()

    for attr in layout.required:
        if not values[attr]:
            raise RecordError(VALIDATION, f"Missing required field: {layout.label_for(attr)}")

    if layout.record_type == TEACHERS:
        values["subjects"] = split_subjects(values["subjects"])
    row = layout.row_class(**values)
    if reference is not None:
        row.department_id = reference.resolve(row.department)
    return row


def _csv_value(value: str) -> str:
    if "," in value:
        return f'"{value}"'
    return value


def template_csv(record_type) -> str:
    """Header line plus one example line for the record type."""
    layout = get_layout(record_type)
    lines = [",".join(layout.headers), ",".join(_csv_value(v) for v in layout.example)]
    return "\n".join(lines) + "\n"
