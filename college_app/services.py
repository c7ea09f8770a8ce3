import secrets
import string
from datetime import date

from flask import current_app
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from . import db
from .models import Department, User, Student, Teacher
from .imports.records import STUDENTS, TEACHERS, normalize_record_type
from .imports.reconcile import ReferenceIndex


def _generate_password(length=10):
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _code_taken(model, column, code):
    if db.session.execute(select(model).filter(column == code)).scalars().first():
        return True
    # The code doubles as the login username
    return db.session.execute(select(User).filter(User.username == code)).scalars().first() is not None


def _next_code(model, column, prefix):
    """Next free code like STU0001, skipping codes already taken."""
    n = (db.session.execute(select(func.count()).select_from(model)).scalar() or 0) + 1
    while True:
        code = f"{prefix}{n:04d}"
        if not _code_taken(model, column, code):
            return code
        n += 1


def _db_error_text(e):
    """Driver message of a database error, first line only."""
    text = str(getattr(e, "orig", None) or e).strip()
    return text.splitlines()[0] if text else e.__class__.__name__


def _email_taken(model, email):
    return db.session.execute(
        select(model).filter(func.lower(model.email) == email.lower())
    ).scalars().first() is not None


def _create_login(username, email, role, password):
    issued = None
    if not password:
        issued = _generate_password()
    u = User(
        username=username,
        email=email,
        role=role,
        password_hash=generate_password_hash(password or issued),
        must_change_password=bool(issued),
    )
    db.session.add(u)
    db.session.flush()  # get user_id
    return u, issued


def _audit(action, acting_user, **fields):
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    current_app.logger.info(f"AUDIT {action} user={getattr(acting_user, 'username', None)} {extra}")


def _kind_of(entity):
    return "student" if isinstance(entity, Student) else "teacher"


def department_reference():
    """Index of every department name -> department_id, loaded once per run."""
    rows = db.session.execute(select(Department.name, Department.department_id)).all()
    return ReferenceIndex.from_pairs((name, dept_id) for name, dept_id in rows)


def create_student(row, acting_user=None):
    """Create a student and its login. Returns (student, None) or (None, message)."""
    email = row.email.strip()
    try:
        if _email_taken(Student, email):
            return None, f"A student with email {email} already exists"
        login_id = _next_code(Student, Student.login_id, "STU")
        user, issued = _create_login(login_id, email, "student", row.password)
        s = Student(
            user_id_fk=user.user_id,
            department_id_fk=row.department_id,
            login_id=login_id,
            name=row.name.strip(),
            email=email,
            mobile=row.mobile.strip(),
            semester=row.semester.strip(),
            section=row.section.strip(),
            enrollment_date=date.today(),
        )
        db.session.add(s)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Failed to create student %s", email)
        return None, f"Failed to create student: {_db_error_text(e)}"
    s.temporary_password = issued
    _audit("student_create", acting_user, login_id=login_id, email=email)
    return s, None


def create_teacher(row, acting_user=None):
    """Create a teacher and its login. Returns (teacher, None) or (None, message)."""
    email = row.email.strip()
    try:
        if _email_taken(Teacher, email):
            return None, f"A teacher with email {email} already exists"
        employee_id = _next_code(Teacher, Teacher.employee_id, "TCH")
        user, issued = _create_login(employee_id, email, "teacher", row.password)
        t = Teacher(
            user_id_fk=user.user_id,
            department_id_fk=row.department_id,
            employee_id=employee_id,
            name=row.name.strip(),
            email=email,
            mobile=row.mobile.strip(),
            qualification=(row.qualification or "").strip() or None,
            experience=(row.experience or "").strip() or None,
        )
        t.subject_list = row.subjects
        db.session.add(t)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Failed to create teacher %s", email)
        return None, f"Failed to create teacher: {_db_error_text(e)}"
    t.temporary_password = issued
    _audit("teacher_create", acting_user, employee_id=employee_id, email=email)
    return t, None


def update_person(entity, changes, acting_user=None):
    """Apply cleaned field changes to a student or teacher.

    `changes` maps attribute names to new values; `department_id` and
    `subjects` (list) are handled specially and an email change is copied
    to the login. Returns (entity, None) or (None, message).
    """
    kind = _kind_of(entity)
    email = changes.get("email")
    try:
        if email and email.lower() != (entity.email or "").lower() and _email_taken(type(entity), email):
            return None, f"A {kind} with email {email} already exists"
        for attr, value in changes.items():
            if attr == "subjects":
                entity.subject_list = value
            elif attr == "department_id":
                entity.department_id_fk = value
            else:
                setattr(entity, attr, value or None)
        if email and entity.user_id_fk:
            user = db.session.get(User, entity.user_id_fk)
            if user:
                user.email = email
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Failed to update %s %s", kind, entity.email)
        return None, f"Failed to update {kind}: {_db_error_text(e)}"
    _audit(f"{kind}_update", acting_user, email=entity.email, fields=",".join(sorted(changes)))
    return entity, None


def delete_person(entity, acting_user=None):
    """Delete a student or teacher together with its login. Returns an error message or None."""
    kind = _kind_of(entity)
    email = entity.email
    try:
        user = db.session.get(User, entity.user_id_fk) if entity.user_id_fk else None
        db.session.delete(entity)
        if user:
            db.session.delete(user)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Failed to delete %s %s", kind, email)
        return f"Failed to delete {kind}: {_db_error_text(e)}"
    _audit(f"{kind}_delete", acting_user, email=email)
    return None


def persist_for(record_type, acting_user=None):
    """Create operation for the record type, bound to the acting user."""
    kind = normalize_record_type(record_type)
    if kind == STUDENTS:
        return lambda row: create_student(row, acting_user=acting_user)
    if kind == TEACHERS:
        return lambda row: create_teacher(row, acting_user=acting_user)
    raise ValueError(f"Unknown record type: {record_type!r}")
