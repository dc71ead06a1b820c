import pytest
from fastapi.testclient import TestClient

from conftest import DEVICE_TOKEN, headers_for


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Scholaris School Management API"
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert "published" in health.json()["notifications"]


def test_missing_identity_is_401(client, school):
    response = client.get("/api/grades")
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Not authorized, no identity provided"}


def test_claimed_role_must_match_account(client, school):
    alice = school.student_users[0]
    forged = {"X-User-Id": alice.id, "X-User-Role": "admin"}

    response = client.get(f"/api/grades/student/{school.s2.id}/summary", headers=forged)
    assert response.status_code == 401
    assert response.json()["message"] == "Not authorized, role does not match account"

    own = client.get(f"/api/grades/student/{school.s1.id}/summary", headers=headers_for(alice))
    assert own.status_code == 200


def test_unknown_account_is_401(client, school):
    response = client.get("/api/fees", headers={"X-User-Id": "nobody", "X-User-Role": "admin"})
    assert response.status_code == 401


def test_wrong_role_is_403(client, school):
    response = client.post("/api/grades", headers=headers_for(school.student_users[0]), json={
        "student": school.s1.id, "course": school.course.id, "gradeType": "exam",
        "pointsEarned": 40, "maxPoints": 50,
    })
    assert response.status_code == 403
    assert response.json()["success"] is False


def test_unknown_grade_is_404(client, school):
    response = client.get("/api/grades/does-not-exist", headers=headers_for(school.admin))
    assert response.status_code == 404
    assert response.json()["message"] == "Grade not found"


def test_malformed_body_is_400(client, school):
    response = client.post("/api/grades", headers=headers_for(school.teacher_user), json={"student": school.s1.id})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert {error["field"] for error in body["errors"]} >= {"course", "gradeType"}


def test_record_and_update_grade(client, school):
    teacher = headers_for(school.teacher_user)
    created = client.post("/api/grades", headers=teacher, json={
        "student": school.s1.id, "course": school.course.id, "gradeType": "exam",
        "pointsEarned": 45, "maxPoints": 50,
    })
    assert created.status_code == 201
    grade = created.json()["data"]
    assert grade["letterGrade"] == "A+"

    updated = client.put(f"/api/grades/{grade['id']}", headers=teacher, json={"maxPoints": 90})
    assert updated.status_code == 200
    assert updated.json()["data"]["percentage"] == 50

    summary = client.get(f"/api/grades/student/{school.s1.id}/summary",
                         headers=headers_for(school.student_users[0]))
    assert summary.json()["data"]["overallGPA"] == 50


def test_mark_attendance_over_http(client, school):
    response = client.post("/api/attendance/mark", headers=headers_for(school.teacher_user), json={
        "attendanceRecords": [
            {"student": school.s1.id, "course": school.course.id, "date": "2024-09-02", "status": "present"},
            {"student": school.s1.id, "course": school.course.id, "date": "2024-09-02", "status": "absent"},
        ]
    })
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] == 2
    assert [r["status"] for r in data["results"]] == ["marked", "already_marked"]

    rate = client.get(f"/api/attendance/student/{school.s1.id}", headers=headers_for(school.parent))
    assert rate.json()["data"]["statistics"]["attendanceRate"] == 100


def test_class_attendance_forbidden_for_students(client, school):
    response = client.get("/api/attendance/class/10", headers=headers_for(school.student_users[0]))
    assert response.status_code == 403


def test_biometric_sync_rejects_bad_token(client, school):
    response = client.post("/api/biometric/sync-attendance", headers={"X-Device-Token": "nope"},
                           json={"attendanceRecords": [{"biometricId": "FP-1", "timestamp": "2024-09-02"}]})
    assert response.status_code == 401

    accepted = client.post("/api/biometric/sync-attendance", headers={"X-Device-Token": DEVICE_TOKEN},
                           json={"attendanceRecords": [{"biometricId": "FP-1", "timestamp": "2024-09-02"}]})
    assert accepted.status_code == 200
    assert accepted.json()["data"]["failed"] == 1


def test_enrollment_over_capacity_is_400(client, school):
    admin = headers_for(school.admin)
    course = client.post("/api/courses", headers=admin, json={
        "title": "Seminar", "code": "SEM1", "instructor": school.teacher.id, "maxEnrollment": 1,
    })
    assert course.status_code == 201
    course_id = course.json()["data"]["id"]

    response = client.post(f"/api/courses/{course_id}/enroll", headers=admin,
                           json={"students": [school.s1.id, school.s2.id]})
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot enroll more than 1 students in this course"

    ok = client.post(f"/api/courses/{course_id}/enroll", headers=admin, json={"students": [school.s1.id]})
    assert ok.status_code == 200
    roster = client.get(f"/api/courses/{course_id}/students", headers=admin)
    assert roster.json()["data"]["totalEnrolled"] == 1


def test_duplicate_course_code_is_400(client, school):
    response = client.post("/api/courses", headers=headers_for(school.admin), json={
        "title": "Physics again", "code": "PHY101", "instructor": school.teacher.id,
    })
    assert response.status_code == 400


def test_version_conflict_is_409(client, platform, school, monkeypatch):
    monkeypatch.setattr(platform.store.courses, "save_if_unchanged", lambda entity: False)
    response = client.post(f"/api/courses/{school.course.id}/enroll", headers=headers_for(school.admin),
                           json={"students": [school.s3.id]})
    assert response.status_code == 409


def test_assignment_with_grades_is_not_deletable(client, school):
    teacher = headers_for(school.teacher_user)
    assignment = client.post("/api/assignments", headers=teacher, json={
        "title": "Lab", "course": school.course.id, "dueDate": "2024-10-01", "maxPoints": 10,
    }).json()["data"]
    client.post("/api/grades", headers=teacher, json={
        "student": school.s1.id, "course": school.course.id, "gradeType": "assignment",
        "assignment": assignment["id"], "pointsEarned": 8, "maxPoints": 10,
    })

    response = client.delete(f"/api/assignments/{assignment['id']}", headers=teacher)
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot delete assignment with associated grades"


def test_stock_update_over_http(client, school):
    accountant = headers_for(school.accountant)
    item = client.post("/api/inventory", headers=accountant, json={
        "name": "Paper", "category": "Stationery", "sku": "PPR-1", "quantity": 3, "unit": "ream",
        "minStockLevel": 5,
    }).json()["data"]

    response = client.post(f"/api/inventory/{item['id']}/stock-update", headers=accountant,
                           json={"quantityChange": -7, "reason": "Exam printing"})
    assert response.status_code == 200
    assert response.json()["data"]["quantity"] == 0

    low = client.get("/api/inventory/low-stock", headers=accountant)
    assert low.json()["data"]["pagination"]["totalDocs"] == 1


def test_directory_bootstrap(client, school):
    admin = headers_for(school.admin)
    user = client.post("/api/users", headers=admin, json={
        "firstName": "Eve", "lastName": "New", "email": "eve@school.test", "role": "student",
    })
    assert user.status_code == 201

    student = client.post("/api/students", headers=admin, json={
        "user": user.json()["data"]["id"], "studentId": "S010", "rollNumber": "10", "class": "11",
    })
    assert student.status_code == 201
    assert student.json()["data"]["class"] == "11"

    duplicate = client.post("/api/users", headers=admin, json={
        "firstName": "Eve", "lastName": "Again", "email": "eve@school.test", "role": "parent",
    })
    assert duplicate.status_code == 400


def test_unexpected_error_is_500(platform, school, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(platform.grade_service, "list_grades", explode)
    client = TestClient(platform.app, raise_server_exceptions=False)

    response = client.get("/api/grades", headers=headers_for(school.admin))
    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error"}


def test_socket_binding_and_relay(client):
    with client.websocket_connect("/ws") as socket:
        socket.send_json({"type": "user_connected", "userId": "user-1"})
        connected = socket.receive_json()
        assert connected["type"] == "connected"
        assert connected["payload"]["userId"] == "user-1"

        socket.send_json({"type": "send_notification", "recipient": "user-1", "payload": {"text": "hello"}})
        message = socket.receive_json()
        assert message == {"type": "notification", "payload": {"text": "hello"}, "recipient": "user-1"}

        socket.send_json({"type": "attendance_sync", "payload": {"studentId": "s1"}})
        assert socket.receive_json() == {"type": "attendance_updated", "payload": {"studentId": "s1"}}

        socket.send_json({"type": "mystery"})
        assert socket.receive_json()["type"] == "error"


@pytest.mark.parametrize("path", ["/api/fees", "/api/inventory/summary"])
def test_teachers_have_no_financial_access(client, school, path):
    response = client.get(path, headers=headers_for(school.teacher_user))
    assert response.status_code == 403


def test_library_circulation_over_http(client, school):
    admin = headers_for(school.admin)
    created = client.post("/api/library", headers=admin, json={
        "bookId": "LIB-1", "title": "Optics", "author": "Newton", "category": "Science", "totalCopies": 1,
    })
    assert created.status_code == 201
    book = created.json()["data"]
    assert book["availableCopies"] == 1

    teacher = headers_for(school.teacher_user)
    issued = client.post("/api/library/issue", headers=teacher, json={
        "bookId": book["id"], "studentId": school.s1.id, "dueDate": "2024-10-01",
    })
    assert issued.status_code == 200
    assert issued.json()["data"]["book"]["status"] == "borrowed"

    again = client.post("/api/library/issue", headers=teacher, json={
        "bookId": book["id"], "studentId": school.s2.id, "dueDate": "2024-10-01",
    })
    assert again.status_code == 400
    assert again.json()["message"] == "Book is not available for issue"

    stats = client.get("/api/library/stats", headers=headers_for(school.student_users[0]))
    assert stats.json()["data"]["borrowed"] == 1

    returned = client.post("/api/library/return", headers=teacher, json={"bookId": book["id"]})
    assert returned.json()["data"]["availableCopies"] == 1

    search = client.get("/api/library/search", headers=teacher, params={"q": "opt"})
    assert [b["bookId"] for b in search.json()["data"]] == ["LIB-1"]
    assert client.get("/api/library/missing", headers=teacher).status_code == 404


def test_expenses_over_http(client, school):
    accountant = headers_for(school.accountant)
    created = client.post("/api/expenses", headers=accountant, json={
        "expenseType": "maintenance", "category": "Plumbing", "amount": 80, "date": "2024-09-03",
    })
    assert created.status_code == 201
    assert created.json()["data"]["paidBy"] == school.accountant.id

    summary = client.get("/api/expenses/summary", headers=accountant)
    assert summary.json()["data"]["expensesByMonth"] == {"2024-09": 80}

    categories = client.get("/api/expenses/categories", headers=accountant)
    assert categories.json()["data"][0]["category"] == "Plumbing"

    assert client.get("/api/expenses", headers=headers_for(school.teacher_user)).status_code == 403
    denied = client.delete(f"/api/expenses/{created.json()['data']['id']}", headers=accountant)
    assert denied.status_code == 403
