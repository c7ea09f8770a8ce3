from college_app.models import Course
from conftest import login


def _create(client, **overrides):
    payload = {"code": "CS101", "name": "Intro to Programming", "department": "computer science",
               "semester": "1st", "credits": 4}
    payload.update(overrides)
    return client.post("/api/courses", json=payload)


def test_create_and_list_courses(admin_client):
    resp = _create(admin_client)
    assert resp.status_code == 201
    course = resp.get_json()["data"]
    assert course["department"] == "Computer Science"
    assert (course["credits"], course["duration"], course["status"]) == (4, "16 weeks", "Active")

    _create(admin_client, code="MA201", name="Linear Algebra", department="Mathematics", semester="3rd")
    listing = admin_client.get("/api/courses?semester=1st").get_json()
    assert [c["code"] for c in listing["data"]] == ["CS101"]
    assert admin_client.get("/api/courses").get_json()["meta"]["count"] == 2


def test_course_validation(admin_client):
    _create(admin_client)
    resp = _create(admin_client, code="cs101")
    assert resp.status_code == 409
    assert resp.get_json()["error"]["code"] == "duplicate"

    resp = _create(admin_client, code="CS102", name="")
    assert resp.get_json()["error"] == {"code": "validation", "message": "Missing required field: Course Name"}

    resp = _create(admin_client, code="CS103", credits=9)
    assert resp.status_code == 400

    resp = _create(admin_client, code="CS104", department="Astronomy")
    assert resp.get_json()["error"]["code"] == "resolution"


def test_update_course(admin_client):
    course = _create(admin_client).get_json()["data"]
    resp = admin_client.put(f"/api/courses/{course['id']}", json={"status": "inactive", "credits": "2"})
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert (data["status"], data["credits"], data["code"]) == ("Inactive", 2, "CS101")

    other = _create(admin_client, code="CS201", name="Data Structures").get_json()["data"]
    resp = admin_client.put(f"/api/courses/{other['id']}", json={"code": "CS101"})
    assert resp.status_code == 409
    resp = admin_client.put(f"/api/courses/{other['id']}", json={"status": "Archived"})
    assert resp.status_code == 400
    assert admin_client.put("/api/courses/999", json={"name": "X"}).status_code == 404


def test_course_blocks_department_delete_until_removed(admin_client, app):
    course = _create(admin_client).get_json()["data"]
    dept_id = course["department_id"]
    assert admin_client.delete(f"/api/departments/{dept_id}").status_code == 409

    assert admin_client.delete(f"/api/courses/{course['id']}").status_code == 200
    with app.app_context():
        assert Course.query.count() == 0
    assert admin_client.delete(f"/api/departments/{dept_id}").status_code == 200


def test_course_report(admin_client):
    _create(admin_client)
    lines = admin_client.get("/reports/courses.csv").get_data(as_text=True).splitlines()
    assert lines == ["Code,Name,Department,Semester,Credits,Duration,Status",
                     "CS101,Intro to Programming,Computer Science,1st,4,16 weeks,Active"]
    stats = admin_client.get("/api/reports/stats").get_json()["data"]
    assert stats["total_courses"] == 1


def test_courses_read_only_for_teachers(client):
    login(client, "teacher1")
    assert client.get("/api/courses").status_code == 200
    assert _create(client).status_code == 403
