import pytest
import sys
import os
import re
from datetime import timedelta
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import app as app_module
from helpers import utc_now
from conftest import register

# ---------- REGISTER ----------

def test_register_teacher(client, db):
    response = client.post('/api/auth/register', json={
        "username": "jsmith", "email": "John@Teacher.com", "password": "secret123",
        "role": "teacher", "name": "John Smith", "department": "Mathematics"
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["data"]["token"]
    assert body["data"]["user"]["role"] == "teacher"
    assert body["data"]["user"]["email"] == "john@teacher.com"
    assert "password" not in body["data"]["user"]
    stored = db.teachers.find_one({"username": "jsmith"})
    assert stored["password"] != "secret123"
    assert stored["department"] == "Mathematics"

def test_register_student_has_default_stats(client, db):
    register("student")
    stored = db.students.find_one({"email": "student@example.com"})
    assert stored["stats"]["averageScore"] == 0
    assert stored["stats"]["streak"] == 0
    assert stored["classrooms"] == []

@pytest.mark.parametrize("missing", ["username", "email", "password", "role", "name"])
def test_register_missing_field(client, missing):
    payload = {"username": "u", "email": "u@example.com", "password": "secret123", "role": "student", "name": "U"}
    payload.pop(missing)
    response = client.post('/api/auth/register', json=payload)
    assert response.status_code == 400
    assert response.get_json()["success"] is False

def test_register_invalid_role(client):
    response = client.post('/api/auth/register', json={
        "username": "u", "email": "u@example.com", "password": "secret123", "role": "admin", "name": "U"
    })
    assert response.status_code == 400

def test_register_short_password(client):
    response = client.post('/api/auth/register', json={
        "username": "u", "email": "u@example.com", "password": "12345", "role": "student", "name": "U"
    })
    assert response.status_code == 400
    assert "6 characters" in response.get_json()["error"]

def test_register_duplicate_across_roles(client, teacher):
    response = client.post('/api/auth/register', json={
        "username": "someone", "email": "teacher@example.com", "password": "secret123",
        "role": "student", "name": "Someone"
    })
    assert response.status_code == 400
    assert "already exists" in response.get_json()["error"]

# ---------- LOGIN ----------

def test_login_valid(client, teacher):
    response = client.post('/api/auth/login', json={
        "email": "teacher@example.com", "password": "secret123", "role": "teacher"
    })
    assert response.status_code == 200
    assert response.get_json()["data"]["token"]

def test_login_wrong_password(client, teacher):
    response = client.post('/api/auth/login', json={
        "email": "teacher@example.com", "password": "wrong-password", "role": "teacher"
    })
    assert response.status_code == 401

def test_login_wrong_role(client, teacher):
    response = client.post('/api/auth/login', json={
        "email": "teacher@example.com", "password": "secret123", "role": "student"
    })
    assert response.status_code == 401

def test_login_missing_fields(client):
    response = client.post('/api/auth/login', json={"email": "teacher@example.com"})
    assert response.status_code == 400

@pytest.mark.parametrize("payload", [
    {"email": 123, "password": "secret123", "role": "teacher"},
    {"email": "teacher@example.com", "password": 123456, "role": "teacher"},
    {"email": ["teacher@example.com"], "password": "secret123", "role": "teacher"}
])
def test_login_non_string_fields(client, teacher, payload):
    response = client.post('/api/auth/login', json=payload)
    assert response.status_code == 400
    assert response.get_json()["success"] is False

# ---------- AUTHENTICATION ----------

def test_me_with_bearer_token(client, student):
    response = client.get('/api/auth/me', headers=student["headers"])
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["authMethod"] == "jwt"
    assert data["user"]["role"] == "student"

def test_me_without_credentials(client):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
    assert response.get_json()["error"] == "Access denied. Please login."

def test_invalid_bearer_token_rejected(client):
    response = client.get('/api/auth/me', headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401

def test_session_fallback_and_logout(client, teacher):
    client.post('/api/auth/login', json={"email": "teacher@example.com", "password": "secret123", "role": "teacher"})
    response = client.get('/api/auth/me')
    assert response.status_code == 200
    assert response.get_json()["data"]["authMethod"] == "session"

    assert client.post('/api/auth/logout').status_code == 200
    assert client.get('/api/auth/me').status_code == 401

def test_role_required(client, student):
    response = client.get('/api/classrooms', headers=student["headers"])
    assert response.status_code == 403

def test_validate_token_success(client, teacher):
    response = client.post('/api/validate-token', json={"token": teacher["token"]})
    assert response.status_code == 200
    assert response.get_json()["valid"] is True

def test_validate_token_failure(client):
    response = client.post('/api/validate-token', json={"token": "fake-token"})
    assert response.status_code == 401
    assert response.get_json()["valid"] is False

# ---------- PASSWORD RESET ----------

@pytest.fixture
def sent_mail(monkeypatch):
    outbox = []
    monkeypatch.setattr(app_module.mail, "send", lambda message: outbox.append(message))
    return outbox

def test_password_reset_flow(client, teacher, sent_mail):
    response = client.post('/api/request-password-reset', json={"email": "teacher@example.com", "role": "teacher"})
    assert response.status_code == 200
    assert len(sent_mail) == 1
    code = re.search(r"\d{6}", sent_mail[0].body).group(0)

    response = client.put('/api/reset-password', json={
        "email": "teacher@example.com", "role": "teacher", "verification_code": code, "new_password": "newpass123"
    })
    assert response.status_code == 200

    response = client.post('/api/auth/login', json={
        "email": "teacher@example.com", "password": "newpass123", "role": "teacher"
    })
    assert response.status_code == 200

def test_password_reset_unknown_email(client, sent_mail):
    response = client.post('/api/request-password-reset', json={"email": "nobody@example.com", "role": "teacher"})
    assert response.status_code == 404
    assert sent_mail == []

def test_password_reset_wrong_code(client, teacher, sent_mail):
    client.post('/api/request-password-reset', json={"email": "teacher@example.com", "role": "teacher"})
    response = client.put('/api/reset-password', json={
        "email": "teacher@example.com", "role": "teacher", "verification_code": "000000", "new_password": "newpass123"
    })
    assert response.status_code == 400

def test_password_reset_expired_code(client, db, teacher, sent_mail):
    client.post('/api/request-password-reset', json={"email": "teacher@example.com", "role": "teacher"})
    record = db.verification_codes.find_one({"email": "teacher@example.com"})
    db.verification_codes.update_one({"_id": record["_id"]}, {"$set": {"expiresAt": utc_now() - timedelta(minutes=1)}})
    response = client.put('/api/reset-password', json={
        "email": "teacher@example.com", "role": "teacher", "verification_code": record["code"], "new_password": "newpass123"
    })
    assert response.status_code == 400

# ---------- MISC ----------

def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()["status"] == "OK"

def test_unknown_route(client):
    response = client.get('/api/does-not-exist')
    assert response.status_code == 404
    assert response.get_json() == {"success": False, "error": "Route not found", "message": "Route not found"}
