from flask import Blueprint, render_template, request, redirect, url_for, flash, current_app, Response
from flask_login import login_user, logout_user, login_required, current_user
import csv
import io
import json
from sqlalchemy import or_, select, func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from ..models import Course, Department, Student, Teacher, User, ImportLog
from .. import db, csrf_required, limiter, cache
from ..api_utils import api_success, api_error
from ..decorators import role_required
from ..errors import RecordError, RESOLUTION, VALIDATION
from ..imports.records import STUDENTS, TEACHERS, get_layout, map_row, split_subjects
from ..services import create_student, create_teacher, delete_person, department_reference, update_person

main_bp = Blueprint("main", __name__)

DEPARTMENTS_CACHE_KEY = "departments_all"


def _audit(action, **fields):
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    current_app.logger.info(f"AUDIT {action} user={getattr(current_user, 'username', None)} {extra}")


def _payload():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _to_int(val):
    try:
        return int(val) if val not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _like(term):
    """ilike pattern matching `term` literally (backslash escapes)."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@main_bp.route("/")
def index():
    if current_user.is_authenticated:
        return redirect(url_for("main.dashboard"))
    return redirect(url_for("main.login"))


# Authentication routes
@main_bp.route("/login", methods=["GET", "POST"])
@limiter.limit("5 per minute", methods=["POST"])
def login():
    if request.method == "POST":
        username = (request.form.get("username") or "").strip()
        password = request.form.get("password") or ""
        if not username or not password:
            flash("Username and password are required.", "danger")
            return render_template("login.html"), 401
        user = db.session.execute(
            select(User).filter(or_(User.username == username, User.email == username))
        ).scalars().first()
        if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
            flash("Invalid credentials.", "danger")
            return render_template("login.html"), 401
        if not user.is_active:
            flash("This account is disabled.", "danger")
            return render_template("login.html"), 403
        login_user(user)
        flash("Logged in successfully.", "success")
        if user.must_change_password:
            flash("You are using a generated password. Ask the office to set a new one.", "warning")
        return redirect(url_for("main.dashboard"))
    return render_template("login.html")


@main_bp.route("/logout")
def logout():
    if current_user.is_authenticated:
        logout_user()
        flash("Logged out.", "info")
    return redirect(url_for("main.login"))


@main_bp.route("/dashboard")
@login_required
def dashboard():
    role = (getattr(current_user, "role", "") or "").strip().lower()
    ctx = {"role": role}
    if role == "admin":
        ctx["stats"] = _stats()
        ctx["recent_imports"] = db.session.execute(
            select(ImportLog).order_by(ImportLog.created_at.desc(), ImportLog.log_id.desc()).limit(5)
        ).scalars().all()
    elif role == "teacher":
        ctx["profile"] = db.session.execute(select(Teacher).filter_by(user_id_fk=current_user.user_id)).scalars().first()
    elif role == "student":
        ctx["profile"] = db.session.execute(select(Student).filter_by(user_id_fk=current_user.user_id)).scalars().first()
    return render_template("dashboard.html", **ctx)


# ==========================================
# DEPARTMENTS
# ==========================================

def _department_name_taken(name, exclude_id=None):
    q = select(Department).filter(func.lower(Department.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(Department.department_id != exclude_id)
    return db.session.execute(q).scalars().first() is not None


@main_bp.route("/api/departments", methods=["GET"])
@login_required
@cache.cached(timeout=120, key_prefix=DEPARTMENTS_CACHE_KEY)
def departments_list():
    rows = db.session.execute(select(Department).order_by(Department.name.asc())).scalars().all()
    return api_success([d.to_dict() for d in rows], meta={"count": len(rows)})


@main_bp.route("/api/departments", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def departments_create():
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return api_error("validation", "Department name is required.", 400)
    if _department_name_taken(name):
        return api_error("duplicate", f'Department "{name}" already exists.', 409)
    d = Department(
        name=name,
        head_name=(data.get("head_name") or "").strip() or None,
        established_year=_to_int(data.get("established_year")),
    )
    try:
        db.session.add(d)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to create department %s", name)
        return api_error("db_error", "Failed to create department.", 500)
    cache.delete(DEPARTMENTS_CACHE_KEY)
    _audit("department_create", department_id=d.department_id, name=d.name)
    return api_success(d.to_dict(), status=201)


@main_bp.route("/api/departments/<int:department_id>", methods=["PUT"])
@login_required
@role_required("admin")
@csrf_required
def departments_update(department_id):
    d = db.session.get(Department, department_id)
    if not d:
        return api_error("not_found", "Department not found.", 404)
    data = _payload()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return api_error("validation", "Department name is required.", 400)
        if _department_name_taken(name, exclude_id=department_id):
            return api_error("duplicate", f'Department "{name}" already exists.', 409)
        d.name = name
    if "head_name" in data:
        d.head_name = (data.get("head_name") or "").strip() or None
    if "established_year" in data:
        d.established_year = _to_int(data.get("established_year"))
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to update department %s", department_id)
        return api_error("db_error", "Failed to update department.", 500)
    cache.delete(DEPARTMENTS_CACHE_KEY)
    _audit("department_update", department_id=d.department_id, name=d.name)
    return api_success(d.to_dict())


@main_bp.route("/api/departments/<int:department_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def departments_delete(department_id):
    d = db.session.get(Department, department_id)
    if not d:
        return api_error("not_found", "Department not found.", 404)
    in_use = (
        db.session.execute(select(func.count(Student.student_id)).filter_by(department_id_fk=department_id)).scalar()
        + db.session.execute(select(func.count(Teacher.teacher_id)).filter_by(department_id_fk=department_id)).scalar()
        + db.session.execute(select(func.count(Course.course_id)).filter_by(department_id_fk=department_id)).scalar()
    )
    if in_use:
        return api_error("in_use", "Department still has students, teachers or courses.", 409)
    try:
        db.session.delete(d)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to delete department %s", department_id)
        return api_error("db_error", "Failed to delete department.", 500)
    cache.delete(DEPARTMENTS_CACHE_KEY)
    _audit("department_delete", department_id=department_id)
    return api_success({"id": department_id})


# ==========================================
# STUDENTS / TEACHERS
# ==========================================

def _people_query(model, code_column):
    q = select(model)
    dept_id = _to_int(request.args.get("department_id"))
    if dept_id:
        q = q.filter(model.department_id_fk == dept_id)
    term = (request.args.get("q") or "").strip()
    if term:
        like = _like(term)
        q = q.filter(or_(
            model.name.ilike(like, escape="\\"),
            model.email.ilike(like, escape="\\"),
            code_column.ilike(like, escape="\\"),
        ))
    return q


def _row_from_payload(kind, data):
    """Positional fields for the record type from a form/JSON payload."""
    layout = get_layout(kind)
    if not data.get("department") and data.get("department_id"):
        d = db.session.get(Department, _to_int(data.get("department_id")))
        if d:
            data["department"] = d.name
    fields = []
    for attr, _ in layout.columns:
        val = data.get(attr)
        if isinstance(val, (list, tuple)):
            val = ";".join(str(v) for v in val)
        fields.append(str(val or ""))
    return map_row(fields, kind, department_reference())


def _create_person(kind, create):
    try:
        row = _row_from_payload(kind, _payload())
    except RecordError as e:
        return api_error(e.kind, e.message, 400)
    entity, error = create(row, acting_user=current_user)
    if error:
        return api_error("persistence", error, 409)
    body = entity.to_dict()
    if getattr(entity, "temporary_password", None):
        body["temporary_password"] = entity.temporary_password
    return api_success(body, status=201)


@main_bp.route("/api/students", methods=["GET"])
@login_required
@role_required("admin", "teacher")
def students_list():
    q = _people_query(Student, Student.login_id)
    semester = (request.args.get("semester") or "").strip()
    if semester:
        q = q.filter(Student.semester == semester)
    rows = db.session.execute(q.order_by(Student.name.asc()).limit(5000)).scalars().all()
    return api_success([s.to_dict() for s in rows], meta={"count": len(rows)})


@main_bp.route("/api/students", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def students_create():
    return _create_person(STUDENTS, create_student)


@main_bp.route("/api/teachers", methods=["GET"])
@login_required
@role_required("admin")
def teachers_list():
    q = _people_query(Teacher, Teacher.employee_id)
    rows = db.session.execute(q.order_by(Teacher.name.asc()).limit(5000)).scalars().all()
    return api_success([t.to_dict() for t in rows], meta={"count": len(rows)})


@main_bp.route("/api/teachers", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def teachers_create():
    return _create_person(TEACHERS, create_teacher)


def _changes_from_payload(kind, data):
    """Cleaned changes for the fields present in the payload. Passwords are not editable here."""
    layout = get_layout(kind)
    changes = {}
    for attr, label in layout.columns:
        if attr not in data or attr == "password":
            continue
        val = data.get(attr)
        if attr == "subjects":
            raw = ";".join(str(v) for v in val) if isinstance(val, (list, tuple)) else str(val or "")
            changes["subjects"] = split_subjects(raw)
            continue
        val = str(val or "").strip()
        if attr in layout.required and not val:
            raise RecordError(VALIDATION, f"Missing required field: {label}")
        if attr == "department":
            changes["department_id"] = department_reference().resolve(val)
        else:
            changes[attr] = val
    if "department" not in data and data.get("department_id") not in (None, ""):
        d = db.session.get(Department, _to_int(data.get("department_id")) or 0)
        if not d:
            raise RecordError(RESOLUTION, f'Department "{data.get("department_id")}" not found')
        changes["department_id"] = d.department_id
    return changes


def _update_person(kind, entity):
    try:
        changes = _changes_from_payload(kind, _payload())
    except RecordError as e:
        return api_error(e.kind, e.message, 400)
    entity, error = update_person(entity, changes, acting_user=current_user)
    if error:
        return api_error("persistence", error, 409)
    return api_success(entity.to_dict())


def _delete_person(entity, entity_id):
    error = delete_person(entity, acting_user=current_user)
    if error:
        return api_error("db_error", error, 500)
    return api_success({"id": entity_id})


@main_bp.route("/api/students/<int:student_id>", methods=["PUT"])
@login_required
@role_required("admin")
@csrf_required
def students_update(student_id):
    s = db.session.get(Student, student_id)
    if not s:
        return api_error("not_found", "Student not found.", 404)
    return _update_person(STUDENTS, s)


@main_bp.route("/api/students/<int:student_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def students_delete(student_id):
    s = db.session.get(Student, student_id)
    if not s:
        return api_error("not_found", "Student not found.", 404)
    return _delete_person(s, student_id)


@main_bp.route("/api/teachers/<int:teacher_id>", methods=["PUT"])
@login_required
@role_required("admin")
@csrf_required
def teachers_update(teacher_id):
    t = db.session.get(Teacher, teacher_id)
    if not t:
        return api_error("not_found", "Teacher not found.", 404)
    return _update_person(TEACHERS, t)


@main_bp.route("/api/teachers/<int:teacher_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def teachers_delete(teacher_id):
    t = db.session.get(Teacher, teacher_id)
    if not t:
        return api_error("not_found", "Teacher not found.", 404)
    return _delete_person(t, teacher_id)


# ==========================================
# COURSES
# ==========================================

COURSE_STATUSES = ("Active", "Inactive")


def _course_fields(data, course=None):
    """Validated course fields from a payload. Raises RecordError."""
    fields = {}
    for attr, label in (("code", "Course Code"), ("name", "Course Name")):
        if course is None or attr in data:
            val = (data.get(attr) or "").strip()
            if not val:
                raise RecordError(VALIDATION, f"Missing required field: {label}")
            fields[attr] = val
    if data.get("department"):
        fields["department_id_fk"] = department_reference().resolve(data.get("department"))
    elif "department_id" in data:
        dept_id = _to_int(data.get("department_id"))
        if dept_id is not None and not db.session.get(Department, dept_id):
            raise RecordError(RESOLUTION, f'Department "{data.get("department_id")}" not found')
        fields["department_id_fk"] = dept_id
    if "semester" in data:
        fields["semester"] = (data.get("semester") or "").strip() or None
    if "credits" in data:
        credits = _to_int(data.get("credits"))
        if credits is None or not 1 <= credits <= 6:
            raise RecordError(VALIDATION, "Credits must be a whole number from 1 to 6.")
        fields["credits"] = credits
    if "duration" in data:
        fields["duration"] = (data.get("duration") or "").strip() or None
    if "status" in data:
        status = (data.get("status") or "").strip().title()
        if status not in COURSE_STATUSES:
            raise RecordError(VALIDATION, f"Status must be one of: {', '.join(COURSE_STATUSES)}.")
        fields["status"] = status
    return fields


def _course_code_taken(code, exclude_id=None):
    q = select(Course).filter(func.lower(Course.code) == code.lower())
    if exclude_id is not None:
        q = q.filter(Course.course_id != exclude_id)
    return db.session.execute(q).scalars().first() is not None


@main_bp.route("/api/courses", methods=["GET"])
@login_required
def courses_list():
    q = select(Course)
    dept_id = _to_int(request.args.get("department_id"))
    if dept_id:
        q = q.filter(Course.department_id_fk == dept_id)
    semester = (request.args.get("semester") or "").strip()
    if semester:
        q = q.filter(Course.semester == semester)
    rows = db.session.execute(q.order_by(Course.code.asc())).scalars().all()
    return api_success([c.to_dict() for c in rows], meta={"count": len(rows)})


@main_bp.route("/api/courses", methods=["POST"])
@login_required
@role_required("admin")
@csrf_required
def courses_create():
    try:
        fields = _course_fields(_payload())
    except RecordError as e:
        return api_error(e.kind, e.message, 400)
    if _course_code_taken(fields["code"]):
        return api_error("duplicate", f'Course "{fields["code"]}" already exists.', 409)
    c = Course(**fields)
    try:
        db.session.add(c)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to create course %s", fields["code"])
        return api_error("db_error", "Failed to create course.", 500)
    _audit("course_create", course_id=c.course_id, code=c.code)
    return api_success(c.to_dict(), status=201)


@main_bp.route("/api/courses/<int:course_id>", methods=["PUT"])
@login_required
@role_required("admin")
@csrf_required
def courses_update(course_id):
    c = db.session.get(Course, course_id)
    if not c:
        return api_error("not_found", "Course not found.", 404)
    try:
        fields = _course_fields(_payload(), course=c)
    except RecordError as e:
        return api_error(e.kind, e.message, 400)
    if "code" in fields and _course_code_taken(fields["code"], exclude_id=course_id):
        return api_error("duplicate", f'Course "{fields["code"]}" already exists.', 409)
    for attr, value in fields.items():
        setattr(c, attr, value)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to update course %s", course_id)
        return api_error("db_error", "Failed to update course.", 500)
    _audit("course_update", course_id=c.course_id, code=c.code)
    return api_success(c.to_dict())


@main_bp.route("/api/courses/<int:course_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def courses_delete(course_id):
    c = db.session.get(Course, course_id)
    if not c:
        return api_error("not_found", "Course not found.", 404)
    try:
        db.session.delete(c)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to delete course %s", course_id)
        return api_error("db_error", "Failed to delete course.", 500)
    _audit("course_delete", course_id=course_id)
    return api_success({"id": course_id})


# ==========================================
# REPORTS
# ==========================================

def _stats():
    return {
        "total_students": db.session.execute(select(func.count(Student.student_id))).scalar() or 0,
        "total_teachers": db.session.execute(select(func.count(Teacher.teacher_id))).scalar() or 0,
        "total_departments": db.session.execute(select(func.count(Department.department_id))).scalar() or 0,
        "total_courses": db.session.execute(select(func.count(Course.course_id))).scalar() or 0,
    }


@main_bp.route("/api/reports/stats", methods=["GET"])
@login_required
@role_required("admin")
def reports_stats():
    return api_success(_stats())


def _report_rows(kind):
    if kind == "students":
        rows = db.session.execute(select(Student).order_by(Student.login_id.asc())).scalars().all()
        headers = ["LoginId", "Name", "Email", "Mobile", "Department", "Semester", "Section", "EnrollmentDate"]
        data = [
            [s.login_id, s.name, s.email, s.mobile, s.department.name if s.department else "", s.semester, s.section,
             s.enrollment_date.isoformat() if s.enrollment_date else ""]
            for s in rows
        ]
    elif kind == "teachers":
        rows = db.session.execute(select(Teacher).order_by(Teacher.employee_id.asc())).scalars().all()
        headers = ["EmployeeId", "Name", "Email", "Mobile", "Department", "Qualification", "Experience", "Subjects"]
        data = [
            [t.employee_id, t.name, t.email, t.mobile, t.department.name if t.department else "",
             t.qualification or "", t.experience or "", "; ".join(t.subject_list)]
            for t in rows
        ]
    elif kind == "courses":
        rows = db.session.execute(select(Course).order_by(Course.code.asc())).scalars().all()
        headers = ["Code", "Name", "Department", "Semester", "Credits", "Duration", "Status"]
        data = [
            [c.code, c.name, c.department.name if c.department else "", c.semester or "", c.credits or "",
             c.duration or "", c.status or ""]
            for c in rows
        ]
    else:
        rows = db.session.execute(select(Department).order_by(Department.name.asc())).scalars().all()
        headers = ["Name", "HeadName", "EstablishedYear", "Students", "Teachers", "Courses"]
        data = [
            [d.name, d.head_name or "", d.established_year or "", len(d.students), len(d.teachers), len(d.courses)]
            for d in rows
        ]
    return headers, data


@main_bp.route("/reports/<any(students, teachers, courses, departments):kind>.<any(csv, json):fmt>", methods=["GET"])
@login_required
@role_required("admin")
def reports_export(kind, fmt):
    headers, data = _report_rows(kind)
    if fmt == "csv":
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(headers)
        writer.writerows(data)
        body, mimetype = buf.getvalue(), "text/csv"
    else:
        body = json.dumps([dict(zip(headers, r)) for r in data], indent=2)
        mimetype = "application/json"
    return Response(
        body.encode("utf-8"),
        headers={
            "Content-Type": mimetype,
            "Content-Disposition": f"attachment; filename={kind}_report.{fmt}",
        },
    )
