"""
Script to add sample data to the Scholaris platform via the REST API.
Make sure the server is running before executing this script, started with
SCHOLARIS_BOOTSTRAP_ADMIN_ID set to the same id as SCHOLARIS_SEED_ADMIN
(default "seed-admin") so the administrator account exists.

Usage:
    python add_data.py
"""

import requests
import sys
import os


def _console_supports_utf8() -> bool:
    enc = getattr(sys.stdout, "encoding", None)
    return enc is not None and "utf" in enc.lower()


_OK_CHAR = "✓" if _console_supports_utf8() else "[OK]"
_FAIL_CHAR = "✗" if _console_supports_utf8() else "[FAIL]"
_WARN_CHAR = "⚠" if _console_supports_utf8() else "[WARN]"


def _detect_base_url() -> str:
    """Determine a reachable BASE_URL.

    Priority: environment variable `SCHOLARIS_BASE_URL`, then common local ports.
    If nothing responds, fall back to http://127.0.0.1:8000.
    """
    env = os.environ.get("SCHOLARIS_BASE_URL")
    if env:
        return env

    candidates = [
        "http://127.0.0.1:8000",
        "http://127.0.0.1:8888",
        "http://localhost:8000",
        "http://localhost:8888",
    ]

    for c in candidates:
        try:
            resp = requests.get(f"{c}/health", timeout=0.5)
            if resp.status_code == 200:
                return c
        except requests.exceptions.RequestException:
            continue

    return candidates[0]


BASE_URL = _detect_base_url()

# Identity the seeding run acts as; the server checks it against the stored account.
ADMIN = {"X-User-Id": os.environ.get("SCHOLARIS_SEED_ADMIN", "seed-admin"), "X-User-Role": "admin"}


def identity(user, role):
    return {"X-User-Id": user["id"], "X-User-Role": role}


def check_server():
    """Check if the server is running."""
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=2)
        if response.status_code == 200:
            print(f"{_OK_CHAR} Server is running")
            return True
    except requests.exceptions.RequestException:
        pass
    print(f"{_FAIL_CHAR} Server is not running!")
    print("\nPlease start the server first:")
    print("  python -m scholaris.main --port 8000")
    return False


def post(path, data, headers, label, expected=(200, 201)):
    """POST to the API and return the envelope's data, or None on failure."""
    try:
        response = requests.post(f"{BASE_URL}{path}", json=data, headers=headers, timeout=5)
    except requests.exceptions.RequestException as e:
        print(f"{_FAIL_CHAR} Error creating {label}: {e}")
        return None
    if response.status_code in expected:
        print(f"{_OK_CHAR} {label}")
        return response.json().get("data")
    print(f"{_FAIL_CHAR} Failed: {label} ({response.status_code}): {response.text}")
    return None


def create_user(first_name, last_name, email, role):
    return post("/api/users", {
        "firstName": first_name,
        "lastName": last_name,
        "email": email,
        "role": role,
    }, ADMIN, f"Created {role}: {first_name} {last_name}")


def create_teacher(user, employee_id, department):
    return post("/api/teachers", {
        "user": user["id"],
        "employeeId": employee_id,
        "department": department,
    }, ADMIN, f"Created teacher profile {employee_id}")


def create_student(user, student_id, roll_number, class_id, section, parent=None):
    data = {
        "user": user["id"],
        "studentId": student_id,
        "rollNumber": roll_number,
        "class": class_id,
        "section": section,
    }
    if parent:
        data["parent"] = parent["id"]
    return post("/api/students", data, ADMIN, f"Created student profile {student_id}")


def create_course(title, code, instructor, max_enrollment):
    return post("/api/courses", {
        "title": title,
        "code": code,
        "instructor": instructor["id"],
        "maxEnrollment": max_enrollment,
    }, ADMIN, f"Created course: {code} - {title}")


def enroll_students(course, students):
    return post(f"/api/courses/{course['id']}/enroll", {
        "students": [s["id"] for s in students],
    }, ADMIN, f"Enrolled {len(students)} students in {course['code']}")


def main():
    """Main execution."""
    print("=" * 60)
    print("Scholaris Platform - Data Addition Script")
    print("=" * 60)
    print()

    if not check_server():
        sys.exit(1)

    print("\nCreating accounts...")
    teacher_user = create_user("Grace", "Hopper", "grace.hopper@school.example", "teacher")
    parent = create_user("Paula", "Parent", "paula.parent@school.example", "parent")
    accountant = create_user("Arthur", "Ledger", "arthur.ledger@school.example", "accountant")
    pupils = [
        create_user("Alice", "Johnson", "alice.johnson@school.example", "student"),
        create_user("Bob", "Smith", "bob.smith@school.example", "student"),
        create_user("Carol", "Davis", "carol.davis@school.example", "student"),
    ]
    if not teacher_user or not all(pupils):
        print(f"\n{_FAIL_CHAR} Could not create accounts; is the data already seeded?")
        sys.exit(1)

    print("\nCreating profiles...")
    teacher = create_teacher(teacher_user, "EMP100", "Computer Science")
    students = [
        create_student(user, f"S{n:03d}", str(n), "10", "A", parent=parent)
        for n, user in enumerate(pupils, 1)
    ]
    students = [s for s in students if s]

    print("\nCreating courses...")
    course = create_course("Introduction to Programming", "CS101", teacher, 30) if teacher else None
    if course and students:
        enroll_students(course, students)

    if course and students:
        print("\nMarking attendance...")
        teacher_headers = identity(teacher_user, "teacher")
        result = post("/api/attendance/mark", {
            "attendanceRecords": [
                {"student": s["id"], "course": course["id"], "date": "2024-09-02", "status": status}
                for s, status in zip(students, ["present", "late", "absent"])
            ]
        }, teacher_headers, "Marked attendance for 2024-09-02")
        if result and result.get("failed"):
            print(f"{_WARN_CHAR} {result['failed']} attendance records failed")

        print("\nRecording grades...")
        for s, points in zip(students, [93, 78, 61]):
            post("/api/grades", {
                "student": s["id"],
                "course": course["id"],
                "gradeType": "exam",
                "pointsEarned": points,
                "maxPoints": 100,
            }, teacher_headers, f"Recorded exam grade {points}/100")

    if accountant and students:
        print("\nRaising fees...")
        for s in students:
            post("/api/fees", {
                "student": s["id"],
                "academicYear": "2024-2025",
                "feeType": "tuition",
                "amount": 1200,
                "dueDate": "2024-10-01",
            }, identity(accountant, "accountant"), f"Raised tuition fee for {s['studentId']}")

    print("\n" + "=" * 60)
    print(f"{_OK_CHAR} Sample data added successfully!")
    print("=" * 60)
    print("\nYou can now:")
    print(f"  - View API docs: {BASE_URL}/docs")
    if students:
        print(f"  - Grade summary: curl -H 'X-User-Id: {ADMIN['X-User-Id']}' -H 'X-User-Role: admin' "
              f"{BASE_URL}/api/grades/student/{students[0]['id']}/summary")
    print()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print(f"\n\n{_FAIL_CHAR} Interrupted by user")
        sys.exit(1)
