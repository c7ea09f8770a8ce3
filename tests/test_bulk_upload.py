import io

from college_app import db
from college_app.models import ImportLog, Student, Teacher, User
from conftest import login, upload

HEADER = "Name,Email,Mobile,Department,Semester,Section,Password"
STUDENTS_CSV = "\n".join([
    HEADER,
    "John Doe,john@example.com,1234567890,Computer Science,1st,A,password123",
    "Jane Roe,jane@example.com,555,,2nd,B,pw",
    "Raj Patel,raj@example.com,777,computer science ,3rd,C,",
]) + "\n"


def test_bulk_upload_page_renders(admin_client):
    resp = admin_client.get("/admin/bulk-upload")
    assert resp.status_code == 200
    assert b"Bulk Upload" in resp.data
    assert b"/admin/bulk-upload/template/students" in resp.data


def test_template_download(admin_client):
    resp = admin_client.get("/admin/bulk-upload/template/students")
    assert resp.status_code == 200
    assert resp.headers["Content-Type"].startswith("text/csv")
    assert "students_template.csv" in resp.headers["Content-Disposition"]
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == HEADER
    assert len(lines) == 2


def test_unknown_template_is_404(admin_client):
    assert admin_client.get("/admin/bulk-upload/template/courses").status_code == 404


def test_student_upload_creates_rows_and_reports_errors(admin_client, app):
    resp = upload(admin_client, STUDENTS_CSV)
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    assert "Successfully uploaded 2 records" in body
    assert "1 errors occurred" in body
    assert "Line 3: Missing required field: Department" in body

    with app.app_context():
        students = Student.query.order_by(Student.login_id).all()
        assert [s.email for s in students] == ["john@example.com", "raj@example.com"]
        assert students[0].login_id == "STU0001"
        assert students[1].department.name == "Computer Science"
        raj = db.session.get(User, students[1].user_id_fk)
        assert raj.role == "student"
        assert raj.must_change_password

        lg = ImportLog.query.one()
        assert (lg.kind, lg.total_count, lg.created_count, lg.errors_count) == ("students", 3, 2, 1)


def test_reupload_reports_duplicates(admin_client, app):
    upload(admin_client, STUDENTS_CSV)
    resp = upload(admin_client, STUDENTS_CSV)
    body = resp.get_data(as_text=True)
    assert "Successfully uploaded 0 records" in body
    assert "Line 2: A student with email john@example.com already exists" in body
    with app.app_context():
        assert Student.query.count() == 2


def test_dry_run_creates_nothing(admin_client, app):
    resp = upload(admin_client, STUDENTS_CSV, dry_run=True)
    assert b"Dry run: 2 records would succeed" in resp.data
    with app.app_context():
        assert Student.query.count() == 0
        assert ImportLog.query.one().dry_run


def test_teacher_upload(admin_client, app):
    csv_text = (
        "Name,Email,Mobile,Department,Qualification,Experience,Subjects,Password\n"
        'Dr. Jane Smith,jane@example.com,0987654321,Mathematics,Ph.D.,5 years,"Algebra, Calculus",pw\n'
    )
    resp = upload(admin_client, csv_text, record_type="teachers")
    assert b"Successfully uploaded 1 records" in resp.data
    with app.app_context():
        t = Teacher.query.one()
        assert t.employee_id == "TCH0001"
        assert t.subject_list == ["Algebra", "Calculus"]
        assert not db.session.get(User, t.user_id_fk).must_change_password


def test_empty_file_fails_whole_upload(admin_client, app):
    resp = upload(admin_client, b"")
    assert b"Upload failed: The uploaded file is empty." in resp.data
    with app.app_context():
        lg = ImportLog.query.one()
        assert lg.fatal_error == "The uploaded file is empty."


def test_wrong_extension_is_rejected(admin_client, app):
    resp = upload(admin_client, STUDENTS_CSV, filename="students.xlsx")
    assert b"File must be a CSV" in resp.data
    with app.app_context():
        assert ImportLog.query.count() == 0


def test_api_upload_returns_report(admin_client):
    resp = admin_client.post(
        "/api/imports/students",
        data={"file": (io.BytesIO(STUDENTS_CSV.encode()), "students.csv")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    payload = resp.get_json()
    assert payload["success"] is True
    report = payload["data"]
    assert report["success_count"] == 2
    assert report["total"] == 3
    assert report["errors"] == ["Line 3: Missing required field: Department"]
    assert payload["meta"]["log_id"]


def test_api_upload_structural_error(admin_client):
    resp = admin_client.post(
        "/api/imports/teachers",
        data={"file": (io.BytesIO(b"Name\n\xff\xfe"), "t.csv")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "structural_error"


def test_api_upload_too_many_rows(admin_client, app):
    app.config["IMPORT_MAX_ROWS"] = 1
    resp = admin_client.post(
        "/api/imports/students",
        data={"file": (io.BytesIO(STUDENTS_CSV.encode()), "students.csv")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert "Too many rows: 3 (max 1)." in resp.get_json()["error"]["message"]


def test_error_report_download(admin_client, app):
    upload(admin_client, STUDENTS_CSV)
    with app.app_context():
        log_id = ImportLog.query.one().log_id
    resp = admin_client.get(f"/admin/import-logs/{log_id}/errors.txt")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == (
        "2 records succeeded\n1 errors occurred\nLine 3: Missing required field: Department\n"
    )

    logs = admin_client.get("/admin/import-logs?kind=students")
    assert b"students.csv" in logs.data


def test_non_admin_cannot_upload(client, app):
    login(client, "teacher1")
    resp = client.post(
        "/api/imports/students",
        data={"file": (io.BytesIO(STUDENTS_CSV.encode()), "students.csv")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 403
    resp = upload(client, STUDENTS_CSV)
    assert b"You do not have permission" in resp.data
    with app.app_context():
        assert Student.query.count() == 0


def test_anonymous_is_sent_to_login(client):
    resp = client.get("/admin/bulk-upload")
    assert resp.status_code == 302
    assert "/login" in resp.headers["Location"]


def test_upload_without_csrf_token_is_refused(admin_client, app):
    app.config["CSRF_ENABLED"] = True
    resp = upload(admin_client, STUDENTS_CSV)
    assert b"Refresh the Page or login again" in resp.data
    with app.app_context():
        assert Student.query.count() == 0
        assert ImportLog.query.count() == 0


def test_api_upload_without_file_lists_problems(admin_client):
    resp = admin_client.post("/api/imports/students", data={}, content_type="multipart/form-data")
    assert resp.status_code == 400
    error = resp.get_json()["error"]
    assert error["code"] == "invalid_upload"
    assert error["details"] == ["Please choose a CSV file."]


def test_codes_skip_usernames_already_taken(admin_client, app):
    with app.app_context():
        db.session.add(User(username="STU0001", role="student"))
        db.session.commit()
    csv_text = "\n".join([
        HEADER,
        "John Doe,john@example.com,1,Computer Science,1st,A,pw",
        "Raj Patel,raj@example.com,2,Mathematics,1st,A,pw",
    ])
    resp = upload(admin_client, csv_text)
    assert b"Successfully uploaded 2 records" in resp.data
    with app.app_context():
        assert [s.login_id for s in Student.query.order_by(Student.login_id)] == ["STU0002", "STU0003"]


def test_database_error_text_reaches_the_report(admin_client, app, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from college_app import services

    def locked(*args, **kwargs):
        raise OperationalError("INSERT INTO users", {}, Exception("database is locked"))

    monkeypatch.setattr(services, "_create_login", locked)
    resp = upload(admin_client, STUDENTS_CSV)
    body = resp.get_data(as_text=True)
    assert "Line 2: Failed to create student: database is locked" in body
    assert "Line 4: Failed to create student: database is locked" in body
    with app.app_context():
        assert Student.query.count() == 0
