from datetime import datetime, timezone
from . import db

def utc_now():
    return datetime.now(timezone.utc)

from flask_login import UserMixin

# ==========================================
# ORGANIZATION
# ==========================================

class Department(db.Model):
    __tablename__ = "departments"
    department_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    head_name = db.Column(db.String(128))
    established_year = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    students = db.relationship("Student", backref="department", lazy=True)
    teachers = db.relationship("Teacher", backref="department", lazy=True)
    courses = db.relationship("Course", backref="department", lazy=True)

    def to_dict(self):
        return {
            "id": self.department_id,
            "name": self.name,
            "head_name": self.head_name,
            "established_year": self.established_year,
        }


class Course(db.Model):
    __tablename__ = "courses"
    course_id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)  # e.g. CS101
    name = db.Column(db.String(128), nullable=False)
    department_id_fk = db.Column(db.Integer, db.ForeignKey("departments.department_id"))
    semester = db.Column(db.String(16))
    credits = db.Column(db.Integer, default=3)
    duration = db.Column(db.String(32), default="16 weeks")
    status = db.Column(db.String(16), default="Active")  # Active, Inactive
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            "id": self.course_id,
            "code": self.code,
            "name": self.name,
            "department_id": self.department_id_fk,
            "department": self.department.name if self.department else None,
            "semester": self.semester,
            "credits": self.credits,
            "duration": self.duration,
            "status": self.status,
        }


# ==========================================
# PEOPLE
# ==========================================

class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(128), unique=True, nullable=False)
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="student")  # admin, teacher, student
    is_active = db.Column(db.Boolean, default=True)

    # Force password change on first login (set for generated passwords)
    must_change_password = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    def get_id(self):
        return str(self.user_id)


class Student(db.Model):
    __tablename__ = "students"
    student_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    department_id_fk = db.Column(db.Integer, db.ForeignKey("departments.department_id"))
    login_id = db.Column(db.String(32), unique=True, nullable=False)

    name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(128), unique=True, nullable=False)
    mobile = db.Column(db.String(20), nullable=False)
    semester = db.Column(db.String(16), nullable=False)  # 1st, 2nd, ...
    section = db.Column(db.String(8), nullable=False)
    enrollment_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            "id": self.student_id,
            "login_id": self.login_id,
            "name": self.name,
            "email": self.email,
            "mobile": self.mobile,
            "department_id": self.department_id_fk,
            "department": self.department.name if self.department else None,
            "semester": self.semester,
            "section": self.section,
            "enrollment_date": self.enrollment_date.isoformat() if self.enrollment_date else None,
        }


class Teacher(db.Model):
    __tablename__ = "teachers"
    teacher_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    department_id_fk = db.Column(db.Integer, db.ForeignKey("departments.department_id"))
    employee_id = db.Column(db.String(32), unique=True, nullable=False)

    name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(128), unique=True, nullable=False)
    mobile = db.Column(db.String(20), nullable=False)
    qualification = db.Column(db.String(128))
    experience = db.Column(db.String(64))
    subjects = db.Column(db.Text)  # ';'-joined subject names
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def subject_list(self):
        return [s for s in (self.subjects or "").split(";") if s]

    @subject_list.setter
    def subject_list(self, values):
        self.subjects = ";".join(v for v in (values or []) if v)

    def to_dict(self):
        return {
            "id": self.teacher_id,
            "employee_id": self.employee_id,
            "name": self.name,
            "email": self.email,
            "mobile": self.mobile,
            "department_id": self.department_id_fk,
            "department": self.department.name if self.department else None,
            "qualification": self.qualification,
            "experience": self.experience,
            "subjects": self.subject_list,
        }


# ==========================================
# IMPORTS
# ==========================================

class ImportLog(db.Model):
    __tablename__ = "import_logs"
    log_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    kind = db.Column(db.String(16), nullable=False)  # students | teachers
    filename = db.Column(db.String(255))
    dry_run = db.Column(db.Boolean, default=False)
    total_count = db.Column(db.Integer, default=0)
    created_count = db.Column(db.Integer, default=0)
    errors_count = db.Column(db.Integer, default=0)
    # Set when the whole run failed before any record was processed
    fatal_error = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
    extra_json = db.Column(db.Text)
