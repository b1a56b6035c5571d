import pytest
import sys
import os
from datetime import timedelta
import mongomock
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import app as app_module
from app import app as flask_app, ensure_indexes
from helpers import utc_now

# ---------- SETUP ----------

@pytest.fixture
def db(monkeypatch, tmp_path):
    mock_db = mongomock.MongoClient()["classroom_portal_test"]
    ensure_indexes(mock_db)
    monkeypatch.setattr(app_module, "db", mock_db)
    monkeypatch.setattr(app_module, "_indexes_ready", True)
    monkeypatch.setitem(flask_app.config, "TESTING", True)
    monkeypatch.setitem(flask_app.config, "UPLOAD_FOLDER", str(tmp_path / "uploads"))
    monkeypatch.setitem(flask_app.config, "BCRYPT_LOG_ROUNDS", 4)
    return mock_db

@pytest.fixture
def client(db):
    with flask_app.test_client() as client:
        yield client

def register(role, **overrides):
    """Registers through a separate client so the shared client carries no session cookie."""
    payload = {
        "username": f"{role}_user",
        "email": f"{role}@example.com",
        "password": "secret123",
        "role": role,
        "name": f"Test {role.capitalize()}"
    }
    payload.update(overrides)
    with flask_app.test_client() as registration_client:
        response = registration_client.post('/api/auth/register', json=payload)
    assert response.status_code == 201, f"Registration failed: {response.data}"
    data = response.get_json()["data"]
    return {
        "user": data["user"],
        "token": data["token"],
        "headers": {"Authorization": f"Bearer {data['token']}"}
    }

@pytest.fixture
def teacher(db):
    return register("teacher", specialization=["Mathematics"])

@pytest.fixture
def other_teacher(db):
    return register("teacher", username="other_teacher", email="other.teacher@example.com", name="Other Teacher")

@pytest.fixture
def student(db):
    return register("student", grade="10th")

@pytest.fixture
def other_student(db):
    return register("student", username="other_student", email="other.student@example.com", name="Other Student")

def create_classroom(client, headers, **overrides):
    payload = {"name": "Algebra I", "description": "First year algebra", "subject": "Mathematics", "grade": "10th"}
    payload.update(overrides)
    response = client.post('/api/classrooms', json=payload, headers=headers)
    assert response.status_code == 201, f"Classroom creation failed: {response.data}"
    return response.get_json()["data"]

def join_classroom(client, headers, code):
    return client.post('/api/student/classrooms/join', json={"pin": code}, headers=headers)

def create_assignment(client, headers, classroom_id, **overrides):
    payload = {
        "title": "Quadratic Equations",
        "description": "Solve the worksheet",
        "subject": "Mathematics",
        "classroomId": classroom_id,
        "dueDate": (utc_now() + timedelta(days=7)).isoformat() + "Z",
        "points": 100
    }
    payload.update(overrides)
    response = client.post('/api/assignments', json=payload, headers=headers)
    assert response.status_code == 201, f"Assignment creation failed: {response.data}"
    return response.get_json()["data"]

@pytest.fixture
def classroom(client, teacher, student):
    classroom = create_classroom(client, teacher["headers"])
    response = join_classroom(client, student["headers"], classroom["inviteCode"])
    assert response.status_code == 200
    return classroom

@pytest.fixture
def assignment(client, teacher, classroom):
    return create_assignment(client, teacher["headers"], classroom["_id"])
