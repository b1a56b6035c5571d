import json
import logging
import os
import secrets
from datetime import timedelta
from functools import wraps

import bcrypt
from dotenv import load_dotenv
from flask import Flask, abort, g, jsonify, request, send_from_directory, session
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token, decode_token, get_jwt, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_mail import Mail, Message
from jwt.exceptions import PyJWTError
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException

import gemini_service
from file_utils import (ALLOWED_MIMETYPES, IMAGE_MIMETYPES, INVALID_TYPE_MESSAGE, StorageError,
                        delete_attachments, delete_stored_file, extract_pdf_text, is_allowed_file,
                        read_stored_text, save_upload)
from gemini_service import AIServiceError
from helpers import (pagination_meta, parse_datetime, parse_pagination, round_half_up, serialize_doc,
                     to_object_id, utc_now)
from pin_utils import (PIN_LENGTH, CodeSpaceExhausted, find_classroom_by_code, generate_pin,
                       generate_unique_code)
from stats import (BADGE_DESCRIPTIONS, assignment_submission_counts, classroom_stats, completion_percentage,
                   dashboard_stats, default_student_stats, default_teacher_stats, effective_submission_status,
                   is_late, letter_grade, record_activity, recompute_student_stats, submission_percentage,
                   teacher_performance, update_streak)

load_dotenv()

app = Flask(__name__)
CORS(app, origins=[os.getenv('CLIENT_URL', 'http://localhost:3000')], supports_credentials=True)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'classroom-portal-dev-key')
app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', app.config['SECRET_KEY'])
app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(days=7)
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER', os.path.join(app.root_path, 'uploads'))
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_CONTENT_LENGTH', 50 * 1024 * 1024))
app.config['BCRYPT_LOG_ROUNDS'] = int(os.getenv('BCRYPT_LOG_ROUNDS', 12))
app.config['SESSION_COOKIE_HTTPONLY'] = True

logging.basicConfig(level=os.getenv('LOG_LEVEL', 'DEBUG').upper())

# MongoDB connection settings
client = MongoClient(os.getenv('MONGO_URI', 'mongodb://localhost:27017'))
db = client[os.getenv('MONGO_DB_NAME', 'classroom_portal')]

# Flask-Mail Configuration
app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 587))
app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'true').lower() == 'true'
app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER', os.getenv('MAIL_USERNAME'))

mail = Mail(app)

jwt = JWTManager(app)

ROLES = ('teacher', 'student')
USER_COLLECTIONS = {'teacher': 'teachers', 'student': 'students'}

TEACHER_PROFILE_FIELDS = ['avatar', 'department', 'qualification', 'experience', 'specialization',
                          'phone', 'address', 'bio']
STUDENT_PROFILE_FIELDS = ['avatar', 'studentId', 'grade', 'rollNumber', 'phone', 'address', 'guardian',
                          'preferences']

ASSIGNMENT_TYPES = ('quiz', 'assignment', 'test', 'homework', 'project')
DIFFICULTIES = ('easy', 'medium', 'hard')
ASSIGNMENT_STATUSES = ('draft', 'published', 'active', 'completed', 'archived')
SUBMISSION_STATUSES = ('submitted', 'graded', 'late')
DOUBT_STATUSES = ('pending', 'answered', 'resolved', 'closed')

RESET_CODE_TTL = timedelta(minutes=15)
MAX_CLASSROOM_INSERT_ATTEMPTS = 5
MAX_ATTACHMENTS = 5
PDF_CONTEXT_LIMIT = 4000


# ----------- Database setup ------------

def ensure_indexes(database):
    """Create the indexes the invariants rely on. Safe to call repeatedly."""
    database.classrooms.create_index([("inviteCode", ASCENDING)], unique=True)
    database.classrooms.create_index([("pin", ASCENDING)], unique=True, sparse=True)
    database.classrooms.create_index([("teacher", ASCENDING)])
    database.submissions.create_index([("assignment", ASCENDING), ("student", ASCENDING)], unique=True)
    database.assignments.create_index([("classroom", ASCENDING), ("dueDate", ASCENDING)])
    database.materials.create_index([("teacher", ASCENDING), ("createdAt", DESCENDING)])
    database.doubts.create_index([("assignment", ASCENDING), ("createdAt", DESCENDING)])
    database.recent_activities.create_index([("teacherId", ASCENDING), ("createdAt", DESCENDING)])
    database.verification_codes.create_index([("email", ASCENDING), ("role", ASCENDING)], unique=True)


_indexes_ready = False


@app.before_request
def prepare_request():
    global _indexes_ready
    if not _indexes_ready:
        ensure_indexes(db)
        _indexes_ready = True
    app.logger.debug('%s %s', request.method, request.path)


@app.cli.command('init-db')
def init_db_command():
    """Create MongoDB indexes."""
    ensure_indexes(db)
    print(f"Indexes created on {db.name}")


# ----------- Responses ------------

def success_response(data=None, message=None, status=200):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_doc(data)
    return jsonify(body), status


def error_response(message, status=400, error=None):
    return jsonify({"success": False, "error": error or message, "message": message}), status


def request_data():
    """Body of the request, whether it was sent as multipart form or JSON."""
    if request.form:
        return request.form.to_dict()
    return request.get_json(silent=True) or {}


def parse_bool(value, default=False):
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def parse_json_field(value, default=None):
    # Multipart forms carry nested values as JSON strings
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value if value is not None else default


def text_field(data, key, default='', strip=True):
    """String value of ``key``; any other JSON type is rejected with a 400."""
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        abort(400, description=f"{key} must be a string")
    return value.strip() if strip else value


def parse_number(value):
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def upload_folder():
    return app.config['UPLOAD_FOLDER']


# ----------- Global error handlers ------------

@app.errorhandler(404)
def handle_not_found(error):
    return error_response("Route not found", 404)


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return error_response("Method not allowed", 405)


@app.errorhandler(413)
def handle_too_large(error):
    max_mb = app.config['MAX_CONTENT_LENGTH'] // (1024 * 1024)
    return error_response(f"File too large. Maximum size is {max_mb}MB.", 413)


@app.errorhandler(500)
def handle_server_error(error):
    return error_response("Internal server error", 500)


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error_response(error.description or error.name, error.code)
    app.logger.exception('Unhandled error on %s %s', request.method, request.path)
    return error_response("Internal server error", 500)


# ----------- Decorators ------------

def find_user_by_id_and_role(user_id, role):
    collection = USER_COLLECTIONS.get(role)
    user_oid = to_object_id(user_id)
    if collection is None or user_oid is None:
        return None
    return db[collection].find_one({"_id": user_oid})


# Bearer token first, then the cookie session
def authenticate(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        user, role, method = None, None, None
        try:
            if verify_jwt_in_request(optional=True):
                role = get_jwt().get('role')
                user = find_user_by_id_and_role(get_jwt_identity(), role)
                method = 'jwt'
        except (JWTExtendedException, PyJWTError) as e:
            app.logger.debug('Bearer token rejected: %s', e)

        if user is None and session.get('user_id') and session.get('user_role'):
            role = session['user_role']
            user = find_user_by_id_and_role(session['user_id'], role)
            method = 'session'

        if user is None:
            return error_response("Access denied. Please login.", 401)

        g.current_user = user
        g.user_role = role
        g.auth_method = method
        return func(*args, **kwargs)
    return wrapper


def role_required(role):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if g.get('user_role') != role:
                return error_response(f"Access denied. {role.capitalize()} role required.", 403)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def current_user_id():
    return g.current_user["_id"]


# ----------- Users ------------

def hash_password(password):
    salt = bcrypt.gensalt(rounds=app.config['BCRYPT_LOG_ROUNDS'])
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def check_password(password, hashed):
    if not password or not hashed:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))


def build_user_document(role, data, password_hash):
    now = utc_now()
    user = {
        "username": data['username'].strip(),
        "email": data['email'].strip().lower(),
        "password": password_hash,
        "name": data['name'].strip(),
        "avatar": data.get('avatar'),
        "classrooms": [],
        "badges": [],
        "createdAt": now,
        "updatedAt": now
    }
    if role == 'teacher':
        for field in TEACHER_PROFILE_FIELDS:
            user.setdefault(field, data.get(field))
        if not isinstance(user.get("specialization"), list):
            user["specialization"] = [user["specialization"]] if user.get("specialization") else []
        user["stats"] = default_teacher_stats()
    else:
        for field in STUDENT_PROFILE_FIELDS:
            user.setdefault(field, data.get(field))
        user.update({
            "submissions": [],
            "doubts": [],
            "stats": default_student_stats(),
            "lastActive": now,
            "streakLastUpdated": None
        })
    return user


def user_payload(user, role):
    payload = serialize_doc(user)
    payload["role"] = role
    return payload


def issue_token(user, role):
    token = create_access_token(identity=str(user["_id"]), additional_claims={"role": role})
    session['user_id'] = str(user["_id"])
    session['user_role'] = role
    return token


def identity_taken(email, username):
    query = {"$or": [{"email": email}, {"username": username}]}
    return db.teachers.find_one(query, {"_id": 1}) is not None or \
        db.students.find_one(query, {"_id": 1}) is not None


# ----------- Auth Endpoints ------------

# Register
@app.route('/api/auth/register', methods=['POST'])
def register():
    app.logger.debug('Register request received')
    data = request.get_json(silent=True) or {}
    required_fields = ['username', 'email', 'password', 'role', 'name']
    if not all(isinstance(data.get(field), str) and data.get(field).strip() for field in required_fields):
        return error_response("Username, email, password, role, and name are required", 400)

    role = data['role']
    if role not in ROLES:
        return error_response("Role must be either student or teacher", 400)

    if len(data['password']) < 6:
        return error_response("Password must be at least 6 characters long", 400)

    email = data['email'].strip().lower()
    username = data['username'].strip()
    if identity_taken(email, username):
        return error_response("User with this email or username already exists", 400)

    try:
        user = build_user_document(role, data, hash_password(data['password']))
        user["_id"] = db[USER_COLLECTIONS[role]].insert_one(user).inserted_id
        token = issue_token(user, role)
        app.logger.info('Registered %s %s', role, user["_id"])
        return success_response(
            {"user": user_payload(user, role), "token": token},
            message=f"{role.capitalize()} registered successfully",
            status=201
        )
    except Exception:
        app.logger.exception('Registration error')
        return error_response("Internal server error", 500)


# Login
@app.route('/api/auth/login', methods=['POST'])
def login():
    app.logger.debug('Login request received')
    data = request.get_json(silent=True) or {}
    email = text_field(data, 'email').lower()
    password = text_field(data, 'password', strip=False)
    role = data.get('role')

    if not email or not password or not role:
        return error_response("Email, password, and role are required", 400)
    if role not in ROLES:
        return error_response("Role must be either student or teacher", 400)

    user = db[USER_COLLECTIONS[role]].find_one({"email": email})
    if not user or not check_password(password, user.get('password')):
        return error_response("Invalid credentials", 401)

    if role == 'student':
        db.students.update_one({"_id": user["_id"]}, {"$set": {"lastActive": utc_now()}})

    token = issue_token(user, role)
    return success_response({"user": user_payload(user, role), "token": token}, message="Login successful")


# Logout
@app.route('/api/auth/logout', methods=['POST'])
@authenticate
def logout():
    session.clear()
    return success_response(message="Logout successful")


# Current user
@app.route('/api/auth/me', methods=['GET'])
@authenticate
def get_me():
    return success_response({
        "user": user_payload(g.current_user, g.user_role),
        "authMethod": g.auth_method
    })


# Validate token
@app.route('/api/validate-token', methods=['POST'])
def validate_token():
    token = (request.get_json(silent=True) or {}).get("token")
    if not token:
        return jsonify(valid=False, error="Token is required"), 401
    try:
        decoded = decode_token(token)
    except (JWTExtendedException, PyJWTError) as e:
        return jsonify(valid=False, error=str(e)), 401
    return jsonify(valid=True, role=decoded.get('role')), 200


# ----------- Flask Mail ------------

# Request password reset
@app.route('/api/request-password-reset', methods=['POST'])
def request_password_reset():
    data = request.get_json(silent=True) or {}
    email = text_field(data, 'email').lower()
    role = data.get('role', 'teacher')
    if not email or role not in ROLES:
        return error_response("A valid email and role are required", 400)

    user = db[USER_COLLECTIONS[role]].find_one({"email": email}, {"_id": 1})
    if not user:
        return error_response("Email not found", 404)

    # Generate verification code
    verification_code = f"{secrets.randbelow(900000) + 100000}"

    # Store verification code with 15 min expiration
    db.verification_codes.replace_one(
        {"email": email, "role": role},
        {"email": email, "role": role, "code": verification_code, "expiresAt": utc_now() + RESET_CODE_TTL},
        upsert=True
    )

    # Send email verification code
    msg = Message(
        subject='Password Reset Verification Code',
        sender=app.config['MAIL_DEFAULT_SENDER'],
        recipients=[email],
        body=f'Your verification code is {verification_code}. It expires in 15 minutes.'
    )
    try:
        mail.send(msg)
    except Exception:
        app.logger.exception('Failed to send password reset email to %s', email)
        return error_response("Failed to send verification email", 500)

    return success_response(message="Verification code sent to your email.")


# Reset password
@app.route('/api/reset-password', methods=['PUT', 'POST'])
def reset_password():
    data = request.get_json(silent=True) or {}
    email = text_field(data, 'email').lower()
    role = data.get('role', 'teacher')
    verification_code = data.get('verification_code') or data.get('code')
    new_password = text_field(data, 'new_password', strip=False) or text_field(data, 'newPassword', strip=False)

    # Check required fields present
    if not email or not verification_code or not new_password or role not in ROLES:
        return error_response("Missing required fields", 400)
    if len(new_password) < 6:
        return error_response("Password must be at least 6 characters long", 400)

    stored_code = db.verification_codes.find_one({"email": email, "role": role})
    if not stored_code or stored_code["expiresAt"] < utc_now() or \
            str(stored_code["code"]) != str(verification_code).strip():
        return error_response("Invalid or expired verification code", 400)

    result = db[USER_COLLECTIONS[role]].update_one(
        {"email": email},
        {"$set": {"password": hash_password(new_password), "updatedAt": utc_now()}}
    )
    # Remove used verification code
    db.verification_codes.delete_one({"_id": stored_code["_id"]})
    if result.matched_count == 0:
        return error_response("Invalid email", 400)

    return success_response(message="Password reset successful")


# ----------- Classrooms Endpoints ------------

DEFAULT_CLASSROOM_SETTINGS = {
    "allowStudentQuestions": True,
    "autoGrading": False,
    "publicLeaderboard": False
}
CLASSROOM_UPDATE_FIELDS = ['name', 'description', 'subject', 'grade']


def get_owned_classroom(classroom_id):
    classroom_oid = to_object_id(classroom_id)
    if classroom_oid is None:
        return None
    return db.classrooms.find_one({"_id": classroom_oid, "teacher": current_user_id()})


def merge_settings(current, updates):
    settings = dict(current or DEFAULT_CLASSROOM_SETTINGS)
    if isinstance(updates, dict):
        for key in DEFAULT_CLASSROOM_SETTINGS:
            if key in updates:
                settings[key] = parse_bool(updates[key], settings.get(key, False))
    return settings


def insert_classroom(classroom):
    # A concurrent insert can still take the code between check and write
    for _ in range(MAX_CLASSROOM_INSERT_ATTEMPTS):
        classroom["inviteCode"] = generate_unique_code(db.classrooms)
        try:
            classroom["_id"] = db.classrooms.insert_one(classroom).inserted_id
            return classroom
        except DuplicateKeyError:
            classroom.pop("_id", None)
            app.logger.warning('Invite code %s taken during insert, retrying', classroom["inviteCode"])
    raise CodeSpaceExhausted("Unable to allocate a unique inviteCode")


def roster_students(classroom, projection=None):
    return list(db.students.find({"_id": {"$in": classroom.get("students") or []}},
                                 projection or {"password": 0}))


# Create classroom
@app.route('/api/classrooms', methods=['POST'])
@authenticate
@role_required('teacher')
def create_classroom():
    data = request.get_json(silent=True) or {}
    name = text_field(data, 'name')
    subject = text_field(data, 'subject')
    grade = (str(data.get('grade') or '')).strip()
    if not name or not subject or not grade:
        return error_response("Name, subject, and grade are required", 400)

    now = utc_now()
    classroom = {
        "name": name,
        "description": text_field(data, 'description'),
        "subject": subject,
        "grade": grade,
        "teacher": current_user_id(),
        "students": [],
        "settings": merge_settings(DEFAULT_CLASSROOM_SETTINGS, data.get('settings')),
        "isActive": True,
        "createdAt": now,
        "updatedAt": now
    }
    try:
        insert_classroom(classroom)
    except CodeSpaceExhausted:
        app.logger.exception('Invite code space exhausted')
        return error_response("Unable to generate a unique invite code", 503)

    db.teachers.update_one({"_id": current_user_id()}, {"$addToSet": {"classrooms": classroom["_id"]}})
    record_activity(db, current_user_id(), 'classroom_created', 'New classroom created',
                    f'Created classroom "{name}" for {subject}',
                    related_id=classroom["_id"], related_model='Classroom',
                    metadata={"subject": subject, "grade": grade})
    return success_response(classroom, message="Classroom created successfully", status=201)


# Get teacher's classrooms
@app.route('/api/classrooms', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classrooms():
    page, limit = parse_pagination(request.args)
    query = {"teacher": current_user_id()}
    total = db.classrooms.count_documents(query)
    classrooms = list(db.classrooms.find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit))

    for classroom in classrooms:
        classroom["stats"] = {
            "studentCount": len(classroom.get("students") or []),
            "assignmentCount": db.assignments.count_documents({"classroom": classroom["_id"]}),
            "materialCount": db.materials.count_documents({"classroom": classroom["_id"], "isActive": True})
        }

    return success_response({"classrooms": classrooms, "pagination": pagination_meta(page, limit, total)})


# Get classroom details
@app.route('/api/classrooms/<classroom_id>', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classroom(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    students = roster_students(classroom)
    assignments = list(db.assignments.find({"classroom": classroom["_id"]}).sort("dueDate", ASCENDING))
    materials = list(db.materials.find({"classroom": classroom["_id"], "isActive": True})
                     .sort("createdAt", DESCENDING))

    classroom["students"] = students
    classroom["assignments"] = assignments
    classroom["materials"] = materials
    classroom["stats"] = classroom_stats(students, len(assignments), len(materials))
    return success_response(classroom)


# Classroom roster
@app.route('/api/classrooms/<classroom_id>/students', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classroom_students(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)
    return success_response(roster_students(classroom))


# Classroom assignments
@app.route('/api/classrooms/<classroom_id>/assignments', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classroom_assignments(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    roster_size = len(classroom.get("students") or [])
    assignments = list(db.assignments.find({"classroom": classroom["_id"]}).sort("dueDate", ASCENDING))
    for assignment in assignments:
        assignment.update(assignment_submission_counts(assignment, roster_size))
    return success_response(assignments)


# Classroom materials
@app.route('/api/classrooms/<classroom_id>/materials', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classroom_materials(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)
    materials = db.materials.find({"classroom": classroom["_id"], "isActive": True}).sort("createdAt", DESCENDING)
    return success_response(list(materials))


# Classroom analytics
@app.route('/api/classrooms/<classroom_id>/analytics', methods=['GET'])
@authenticate
@role_required('teacher')
def get_classroom_analytics(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    students = roster_students(classroom, {"name": 1, "stats": 1})
    roster_size = len(students)
    assignments = list(db.assignments.find({"classroom": classroom["_id"]}).sort("dueDate", ASCENDING))
    material_count = db.materials.count_documents({"classroom": classroom["_id"], "isActive": True})

    assignment_breakdown = []
    for assignment in assignments:
        counts = assignment_submission_counts(assignment, roster_size)
        graded = list(db.submissions.find({"assignment": assignment["_id"], "status": "graded"}, {"score": 1}))
        scores = [submission_percentage(s.get("score"), assignment.get("totalPoints")) for s in graded]
        scores = [s for s in scores if s is not None]
        counts.update({
            "_id": assignment["_id"],
            "title": assignment.get("title"),
            "dueDate": assignment.get("dueDate"),
            "gradedCount": len(graded),
            "averageScore": round_half_up(sum(scores) / len(scores)) if scores else 0
        })
        assignment_breakdown.append(counts)

    top_students = sorted(students, key=lambda s: (s.get("stats") or {}).get("averageScore") or 0, reverse=True)[:5]
    return success_response({
        "stats": classroom_stats(students, len(assignments), material_count),
        "assignments": assignment_breakdown,
        "topStudents": top_students
    })


# Update classroom
@app.route('/api/classrooms/<classroom_id>', methods=['PUT'])
@authenticate
@role_required('teacher')
def update_classroom(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    data = request.get_json(silent=True) or {}
    updated_fields = {}
    for field in CLASSROOM_UPDATE_FIELDS:
        if field in data:
            value = str(data[field] or '').strip()
            if field != 'description' and not value:
                return error_response(f"{field.capitalize()} cannot be empty", 400)
            updated_fields[field] = value
    if 'settings' in data:
        updated_fields["settings"] = merge_settings(classroom.get("settings"), data['settings'])
    if 'isActive' in data:
        updated_fields["isActive"] = parse_bool(data['isActive'], True)

    if not updated_fields:
        return error_response("No valid fields to update", 400)

    updated_fields["updatedAt"] = utc_now()
    db.classrooms.update_one({"_id": classroom["_id"]}, {"$set": updated_fields})
    classroom.update(updated_fields)
    return success_response(classroom, message="Classroom updated successfully")


# Delete classroom
@app.route('/api/classrooms/<classroom_id>', methods=['DELETE'])
@authenticate
@role_required('teacher')
def delete_classroom(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    if classroom.get("students"):
        return error_response("Cannot delete classroom with enrolled students", 400)
    if db.assignments.count_documents({"classroom": classroom["_id"]}) > 0:
        return error_response("Cannot delete classroom with existing assignments", 400)

    db.classrooms.delete_one({"_id": classroom["_id"]})
    db.teachers.update_one({"_id": current_user_id()}, {"$pull": {"classrooms": classroom["_id"]}})
    return success_response(message="Classroom deleted successfully")


# Remove student from classroom
@app.route('/api/classrooms/<classroom_id>/students/<student_id>', methods=['DELETE'])
@authenticate
@role_required('teacher')
def remove_student(classroom_id, student_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    student_oid = to_object_id(student_id)
    if student_oid is None or student_oid not in (classroom.get("students") or []):
        return error_response("Student not found in this classroom", 404)

    # Submissions and doubts stay
    db.classrooms.update_one({"_id": classroom["_id"]},
                             {"$pull": {"students": student_oid}, "$set": {"updatedAt": utc_now()}})
    db.students.update_one({"_id": student_oid}, {"$pull": {"classrooms": classroom["_id"]}})
    return success_response(message="Student removed from classroom successfully")


# Get invite code
@app.route('/api/classrooms/<classroom_id>/invite-code', methods=['GET'])
@authenticate
@role_required('teacher')
def get_invite_code(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)
    return success_response({
        "inviteCode": classroom["inviteCode"],
        "pin": classroom.get("pin"),
        "classroomName": classroom["name"],
        "subject": classroom["subject"]
    })


# Regenerate invite code
@app.route('/api/classrooms/<classroom_id>/invite-code', methods=['POST'])
@authenticate
@role_required('teacher')
def regenerate_invite_code(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)
    try:
        invite_code = assign_unique_code(classroom, 'inviteCode')
    except CodeSpaceExhausted:
        app.logger.exception('Invite code space exhausted')
        return error_response("Unable to generate a unique invite code", 503)
    return success_response({
        "inviteCode": invite_code,
        "classroomName": classroom["name"],
        "subject": classroom["subject"]
    }, message="Invite code regenerated successfully")


def assign_unique_code(classroom, field):
    generator_kwargs = {"field": field}
    if field == 'pin':
        generator_kwargs.update(generator=generate_pin, length=PIN_LENGTH)
    for _ in range(MAX_CLASSROOM_INSERT_ATTEMPTS):
        code = generate_unique_code(db.classrooms, **generator_kwargs)
        update = {field: code, "updatedAt": utc_now()}
        if field == 'pin':
            update["pinGeneratedAt"] = update["updatedAt"]
        try:
            db.classrooms.update_one({"_id": classroom["_id"]}, {"$set": update})
            classroom.update(update)
            return code
        except DuplicateKeyError:
            app.logger.warning('%s %s taken during update, retrying', field, code)
    raise CodeSpaceExhausted(f"Unable to allocate a unique {field}")


# Generate PIN
@app.route('/api/classrooms/<classroom_id>/generate-pin', methods=['POST'])
@authenticate
@role_required('teacher')
def generate_classroom_pin(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)
    try:
        pin = assign_unique_code(classroom, 'pin')
    except CodeSpaceExhausted:
        app.logger.exception('PIN space exhausted')
        return error_response("Unable to generate a unique PIN", 503)
    return success_response({
        "pin": pin,
        "classroomName": classroom["name"],
        "pinGeneratedAt": classroom["pinGeneratedAt"]
    }, message="PIN generated successfully")


# Assign existing assignment to classroom
@app.route('/api/classrooms/<classroom_id>/assign', methods=['POST'])
@authenticate
@role_required('teacher')
def assign_to_classroom(classroom_id):
    classroom = get_owned_classroom(classroom_id)
    if not classroom:
        return error_response("Classroom not found", 404)

    assignment_oid = to_object_id((request.get_json(silent=True) or {}).get('assignmentId'))
    assignment = db.assignments.find_one({"_id": assignment_oid, "teacher": current_user_id()}) \
        if assignment_oid else None
    if not assignment:
        return error_response("Assignment not found", 404)

    db.assignments.update_one({"_id": assignment["_id"]},
                              {"$set": {"classroom": classroom["_id"], "grade": classroom.get("grade"),
                                        "updatedAt": utc_now()}})
    assignment.update({"classroom": classroom["_id"], "grade": classroom.get("grade")})
    return success_response(assignment, message="Assignment assigned to classroom successfully")


# ----------- Student Classrooms Endpoints ------------

def code_from_request():
    data = request.get_json(silent=True) or {}
    return data.get('pin') or data.get('inviteCode') or data.get('code')


# Join classroom with invite code or PIN
@app.route('/api/classrooms/join', methods=['POST'])
@app.route('/api/student/classrooms/join', methods=['POST'])
@authenticate
@role_required('student')
def join_classroom():
    classroom, error = find_classroom_by_code(db.classrooms, code_from_request())
    if error:
        return error_response(error, 400)

    student_id = current_user_id()
    # $addToSet keeps concurrent joins from duplicating roster entries
    result = db.classrooms.update_one({"_id": classroom["_id"]}, {"$addToSet": {"students": student_id}})
    db.students.update_one({"_id": student_id}, {"$addToSet": {"classrooms": classroom["_id"]}})

    if result.modified_count == 0:
        return success_response({
            "classroomId": classroom["_id"],
            "classroomName": classroom["name"],
            "alreadyJoined": True
        }, message="Already joined this classroom")

    record_activity(db, classroom["teacher"], 'student_joined', 'Student joined classroom',
                    f'{g.current_user.get("name")} joined "{classroom["name"]}"',
                    related_id=classroom["_id"], related_model='Classroom',
                    metadata={"studentId": str(student_id)})
    return success_response({
        "classroomId": classroom["_id"],
        "classroomName": classroom["name"],
        "subject": classroom["subject"],
        "alreadyJoined": False
    }, message=f"Successfully joined {classroom['name']}")


# Validate PIN without joining
@app.route('/api/classrooms/validate-pin', methods=['POST'])
@app.route('/api/student/classrooms/validate-pin', methods=['POST'])
def validate_classroom_pin():
    classroom, error = find_classroom_by_code(db.classrooms, code_from_request())
    if error:
        return error_response(error, 400)

    teacher = db.teachers.find_one({"_id": classroom["teacher"]}, {"name": 1})
    return success_response({
        "classroomName": classroom["name"],
        "subject": classroom["subject"],
        "teacherName": teacher.get("name") if teacher else None
    })


# Get student's classrooms
@app.route('/api/student/classrooms', methods=['GET'])
@authenticate
@role_required('student')
def get_student_classrooms():
    classrooms = list(db.classrooms.find({"students": current_user_id()}).sort("createdAt", DESCENDING))
    teacher_ids = list({c["teacher"] for c in classrooms})
    teachers = {t["_id"]: t for t in db.teachers.find({"_id": {"$in": teacher_ids}}, {"name": 1, "email": 1})}
    for classroom in classrooms:
        classroom["teacher"] = teachers.get(classroom["teacher"])
        classroom["studentCount"] = len(classroom.get("students") or [])
        # Classmates are not exposed to students
        classroom.pop("students", None)
    return success_response(classrooms)


# Leave classroom
@app.route('/api/student/classrooms/<classroom_id>/leave', methods=['POST', 'DELETE'])
@authenticate
@role_required('student')
def leave_classroom(classroom_id):
    classroom_oid = to_object_id(classroom_id)
    result = db.classrooms.update_one({"_id": classroom_oid, "students": current_user_id()},
                                      {"$pull": {"students": current_user_id()}}) if classroom_oid else None
    if result is None or result.matched_count == 0:
        return error_response("Classroom not found", 404)
    db.students.update_one({"_id": current_user_id()}, {"$pull": {"classrooms": classroom_oid}})
    return success_response(message="Left classroom successfully")


# ----------- Assignments Endpoints ------------

ASSIGNMENT_UPDATE_FIELDS = ['title', 'description', 'instructions', 'subject', 'type', 'dueDate', 'totalPoints',
                            'difficulty', 'questions', 'timeLimit', 'lateSubmissionAllowed', 'status', 'isActive']


def get_owned_assignment(assignment_id):
    assignment_oid = to_object_id(assignment_id)
    if assignment_oid is None:
        return None
    return db.assignments.find_one({"_id": assignment_oid, "teacher": current_user_id()})


def uploaded_files(field='attachments'):
    return [f for f in request.files.getlist(field) if f and f.filename]


def validate_uploads(files, allowed=ALLOWED_MIMETYPES, limit=MAX_ATTACHMENTS):
    if len(files) > limit:
        return f"A maximum of {limit} files can be attached"
    for file in files:
        if not is_allowed_file(file, allowed):
            return INVALID_TYPE_MESSAGE
    return None


def store_uploads(files):
    stored = []
    try:
        for file in files:
            stored.append(save_upload(file, upload_folder()))
    except StorageError:
        delete_attachments(upload_folder(), stored)
        raise
    return stored


def parse_time_limit(value):
    number = parse_number(value)
    return int(number) if number is not None and number > 0 else None


def decorate_submission(submission, assignment):
    submission["isLate"] = is_late(submission, assignment)
    submission["status"] = effective_submission_status(submission, assignment)
    submission["percentage"] = submission_percentage(submission.get("score"), assignment.get("totalPoints"))
    submission["letterGrade"] = letter_grade(submission["percentage"])
    return submission


# Create assignment
@app.route('/api/assignments', methods=['POST'])
@authenticate
@role_required('teacher')
def create_assignment():
    data = request_data()
    title = text_field(data, 'title')
    subject = text_field(data, 'subject')
    if not title or not subject or not data.get('classroomId') or not data.get('dueDate'):
        return error_response("Title, subject, classroomId, and dueDate are required", 400)

    classroom = get_owned_classroom(data['classroomId'])
    if not classroom:
        return error_response("Classroom not found or access denied", 404)

    due_date = parse_datetime(data['dueDate'])
    if due_date is None:
        return error_response("Invalid due date", 400)

    assignment_type = data.get('type') or 'assignment'
    if assignment_type not in ASSIGNMENT_TYPES:
        return error_response(f"Type must be one of: {', '.join(ASSIGNMENT_TYPES)}", 400)
    difficulty = data.get('difficulty') or 'medium'
    if difficulty not in DIFFICULTIES:
        return error_response(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}", 400)

    total_points = parse_number(data.get('points', data.get('totalPoints', 100)))
    if total_points is None or total_points <= 0:
        return error_response("Points must be a positive number", 400)

    description = text_field(data, 'description')
    questions = parse_json_field(data.get('questions'), [])
    quiz_data = parse_json_field(data.get('quizData'))
    if isinstance(quiz_data, dict):
        if isinstance(quiz_data.get('questions'), list):
            questions = quiz_data['questions']
        if quiz_data.get('quiz') and not description:
            description = quiz_data['quiz']
    elif data.get('quizData'):
        app.logger.warning('Ignoring malformed quizData on assignment "%s"', title)

    files = uploaded_files()
    upload_error = validate_uploads(files)
    if upload_error:
        return error_response(upload_error, 400)

    attachments = []
    try:
        attachments = store_uploads(files)
        now = utc_now()
        assignment = {
            "title": title,
            "description": description,
            "instructions": text_field(data, 'instructions'),
            "subject": subject,
            "grade": classroom.get("grade"),
            "type": assignment_type,
            "teacher": current_user_id(),
            "classroom": classroom["_id"],
            "dueDate": due_date,
            "totalPoints": total_points,
            "difficulty": difficulty,
            "questions": questions if isinstance(questions, list) else [],
            "timeLimit": parse_time_limit(data.get('timeLimit')),
            "lateSubmissionAllowed": parse_bool(data.get('allowLateSubmissions',
                                                         data.get('lateSubmissionAllowed')), True),
            "attachments": attachments,
            "submissions": [],
            "doubts": [],
            "status": "active",
            "isActive": True,
            "createdAt": now,
            "updatedAt": now
        }
        assignment["_id"] = db.assignments.insert_one(assignment).inserted_id
    except Exception:
        app.logger.exception('Create assignment error')
        # Clean up uploaded files if assignment creation failed
        delete_attachments(upload_folder(), attachments)
        return error_response("Failed to create assignment", 500)

    record_activity(db, current_user_id(), 'assignment_created', 'New assignment created',
                    f'Created "{title}" for {classroom["name"]}',
                    related_id=assignment["_id"], related_model='Assignment',
                    metadata={"subject": subject, "classroomId": str(classroom["_id"]),
                              "dueDate": due_date.isoformat(), "points": total_points})
    return success_response(assignment, message="Assignment created successfully", status=201)


# Get assignments (teacher: own, student: from enrolled classrooms)
@app.route('/api/assignments', methods=['GET'])
@authenticate
def get_assignments():
    if g.user_role == 'teacher':
        return teacher_assignments()
    return student_assignments()


def teacher_assignments():
    page, limit = parse_pagination(request.args)
    query = {"teacher": current_user_id()}
    if request.args.get('classroomId'):
        classroom_oid = to_object_id(request.args['classroomId'])
        if classroom_oid is None:
            return error_response("Invalid classroomId", 400)
        query["classroom"] = classroom_oid
    if request.args.get('status'):
        query["status"] = request.args['status']
    if request.args.get('subject'):
        query["subject"] = request.args['subject']

    total = db.assignments.count_documents(query)
    assignments = list(db.assignments.find(query).sort("createdAt", DESCENDING)
                       .skip((page - 1) * limit).limit(limit))

    classroom_ids = list({a["classroom"] for a in assignments})
    classrooms = {c["_id"]: c for c in db.classrooms.find({"_id": {"$in": classroom_ids}}, {"name": 1, "students": 1})}
    now = utc_now()
    for assignment in assignments:
        classroom = classrooms.get(assignment["classroom"]) or {}
        assignment.update(assignment_submission_counts(assignment, len(classroom.get("students") or []), now))
        assignment["classroom"] = {"_id": assignment["classroom"], "name": classroom.get("name")}

    return success_response({"assignments": assignments, "pagination": pagination_meta(page, limit, total)})


def student_assignments():
    student = g.current_user
    query = {"classroom": {"$in": student.get("classrooms") or []}, "status": "active", "isActive": True}
    if request.args.get('subject'):
        query["subject"] = {"$regex": request.args['subject'], "$options": "i"}

    assignments = list(db.assignments.find(query, {"submissions": 0}).sort("dueDate", ASCENDING))
    submissions = {
        s["assignment"]: s
        for s in db.submissions.find({"assignment": {"$in": [a["_id"] for a in assignments]},
                                      "student": student["_id"]})
    }
    classroom_names = {c["_id"]: c.get("name") for c in db.classrooms.find(
        {"_id": {"$in": list({a["classroom"] for a in assignments})}}, {"name": 1})}
    teacher_names = {t["_id"]: t.get("name") for t in db.teachers.find(
        {"_id": {"$in": list({a["teacher"] for a in assignments})}}, {"name": 1})}

    now = utc_now()
    results = []
    for assignment in assignments:
        submission = submissions.get(assignment["_id"])
        due_date = assignment.get("dueDate")
        past_due = due_date is not None and due_date < now

        if submission:
            decorate_submission(submission, assignment)
            submission_status = submission["status"]
        else:
            submission_status = 'overdue' if past_due else 'pending'

        assignment.update({
            "classroom": {"_id": assignment["classroom"], "name": classroom_names.get(assignment["classroom"])},
            "teacher": {"_id": assignment["teacher"], "name": teacher_names.get(assignment["teacher"])},
            "submissionStatus": submission_status,
            "submission": submission,
            "percentage": submission["percentage"] if submission else None,
            "isOverdue": past_due and not submission,
            "timeRemaining": int((due_date - now).total_seconds() * 1000) if due_date and not past_due else 0
        })
        results.append(assignment)

    status = request.args.get('status')
    if status:
        results = [a for a in results if a["submissionStatus"] == status]
    return success_response(results)


# Student assignments
@app.route('/api/student/assignments', methods=['GET'])
@authenticate
@role_required('student')
def get_student_assignments():
    return student_assignments()


# Get assignment
@app.route('/api/assignments/<assignment_id>', methods=['GET'])
@authenticate
@role_required('teacher')
def get_assignment(assignment_id):
    assignment = get_owned_assignment(assignment_id)
    if not assignment:
        return error_response("Assignment not found", 404)

    classroom = db.classrooms.find_one({"_id": assignment["classroom"]}, {"name": 1, "students": 1}) or {}
    assignment.update(assignment_submission_counts(assignment, len(classroom.get("students") or [])))
    assignment["classroom"] = {"_id": assignment["classroom"], "name": classroom.get("name")}
    return success_response(assignment)


# Update assignment
@app.route('/api/assignments/<assignment_id>', methods=['PUT'])
@authenticate
@role_required('teacher')
def update_assignment(assignment_id):
    assignment = get_owned_assignment(assignment_id)
    if not assignment:
        return error_response("Assignment not found", 404)

    data = request.get_json(silent=True) or {}
    updated_fields = {field: data[field] for field in ASSIGNMENT_UPDATE_FIELDS if field in data}

    if 'dueDate' in updated_fields:
        updated_fields['dueDate'] = parse_datetime(updated_fields['dueDate'])
        if updated_fields['dueDate'] is None:
            return error_response("Invalid due date", 400)
    graded = []
    if 'totalPoints' in updated_fields:
        updated_fields['totalPoints'] = parse_number(updated_fields['totalPoints'])
        if updated_fields['totalPoints'] is None or updated_fields['totalPoints'] <= 0:
            return error_response("Points must be a positive number", 400)
        graded = list(db.submissions.find({"assignment": assignment["_id"], "score": {"$ne": None}},
                                          {"student": 1, "score": 1}))
        highest = max((s["score"] for s in graded), default=0)
        if updated_fields['totalPoints'] < highest:
            return error_response(f"Points cannot be lower than the highest graded score ({highest})", 400)
    if 'type' in updated_fields and updated_fields['type'] not in ASSIGNMENT_TYPES:
        return error_response(f"Type must be one of: {', '.join(ASSIGNMENT_TYPES)}", 400)
    if 'difficulty' in updated_fields and updated_fields['difficulty'] not in DIFFICULTIES:
        return error_response(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}", 400)
    if 'status' in updated_fields and updated_fields['status'] not in ASSIGNMENT_STATUSES:
        return error_response(f"Status must be one of: {', '.join(ASSIGNMENT_STATUSES)}", 400)
    if 'questions' in updated_fields and not isinstance(updated_fields['questions'], list):
        return error_response("Questions must be a list", 400)
    for field in ('title', 'description', 'instructions', 'subject'):
        if field in updated_fields:
            updated_fields[field] = text_field(data, field)
    if 'title' in updated_fields and not updated_fields['title']:
        return error_response("Title cannot be empty", 400)
    if 'timeLimit' in updated_fields:
        updated_fields['timeLimit'] = parse_time_limit(updated_fields['timeLimit'])
    for flag in ('lateSubmissionAllowed', 'isActive'):
        if flag in updated_fields:
            updated_fields[flag] = parse_bool(updated_fields[flag], True)

    if not updated_fields:
        return error_response("No valid fields to update", 400)

    updated_fields["updatedAt"] = utc_now()
    db.assignments.update_one({"_id": assignment["_id"]}, {"$set": updated_fields})
    assignment.update(updated_fields)

    # Percentages of graded work depend on totalPoints
    for student_id in {s["student"] for s in graded}:
        recompute_student_stats(db, student_id)

    return success_response(assignment, message="Assignment updated successfully")


# Delete assignment
@app.route('/api/assignments/<assignment_id>', methods=['DELETE'])
@authenticate
@role_required('teacher')
def delete_assignment(assignment_id):
    assignment = get_owned_assignment(assignment_id)
    if not assignment:
        return error_response("Assignment not found", 404)

    delete_attachments(upload_folder(), assignment.get("attachments"))

    submissions = list(db.submissions.find({"assignment": assignment["_id"]}, {"student": 1, "attachments": 1}))
    for submission in submissions:
        delete_attachments(upload_folder(), submission.get("attachments"))
    submission_ids = [s["_id"] for s in submissions]
    affected_students = list({s["student"] for s in submissions})
    if submission_ids:
        db.students.update_many({"_id": {"$in": affected_students}},
                                {"$pull": {"submissions": {"$in": submission_ids}}})
        db.submissions.delete_many({"_id": {"$in": submission_ids}})

    doubt_ids = [d["_id"] for d in db.doubts.find({"assignment": assignment["_id"]}, {"_id": 1})]
    if doubt_ids:
        db.students.update_many({"doubts": {"$in": doubt_ids}}, {"$pull": {"doubts": {"$in": doubt_ids}}})
        db.doubts.delete_many({"_id": {"$in": doubt_ids}})

    db.assignments.delete_one({"_id": assignment["_id"]})

    for student_id in affected_students:
        recompute_student_stats(db, student_id)

    app.logger.info('Deleted assignment %s with %d submissions', assignment["_id"], len(submission_ids))
    return success_response(message="Assignment deleted successfully")


# Get submissions for assignment
@app.route('/api/assignments/<assignment_id>/submissions', methods=['GET'])
@authenticate
@role_required('teacher')
def get_submissions(assignment_id):
    assignment = get_owned_assignment(assignment_id)
    if not assignment:
        return error_response("Assignment not found", 404)

    page, limit = parse_pagination(request.args)
    submissions = list(db.submissions.find({"assignment": assignment["_id"]}).sort("submittedAt", DESCENDING))
    students = {s["_id"]: s for s in db.students.find(
        {"_id": {"$in": [s["student"] for s in submissions]}}, {"name": 1, "email": 1, "studentId": 1, "avatar": 1})}

    for submission in submissions:
        decorate_submission(submission, assignment)
        submission["student"] = students.get(submission["student"], {"_id": submission["student"]})

    status = request.args.get('status')
    if status:
        submissions = [s for s in submissions if s["status"] == status]

    total = len(submissions)
    page_items = submissions[(page - 1) * limit:page * limit]
    return success_response({
        "submissions": page_items,
        "assignment": {"_id": assignment["_id"], "title": assignment["title"],
                       "totalPoints": assignment.get("totalPoints"), "dueDate": assignment.get("dueDate")},
        "pagination": pagination_meta(page, limit, total)
    })


# Submit assignment
@app.route('/api/assignments/<assignment_id>/submit', methods=['POST'])
@app.route('/api/student/assignments/<assignment_id>/submit', methods=['POST'])
@authenticate
@role_required('student')
def submit_assignment(assignment_id):
    assignment_oid = to_object_id(assignment_id)
    assignment = db.assignments.find_one({"_id": assignment_oid}) if assignment_oid else None
    if not assignment:
        return error_response("Assignment not found", 404)

    student_id = current_user_id()
    # Enrollment is checked against the classroom roster
    if not db.classrooms.find_one({"_id": assignment["classroom"], "students": student_id}, {"_id": 1}):
        return error_response("Access denied. You are not enrolled in this classroom.", 403)

    if db.submissions.find_one({"assignment": assignment["_id"], "student": student_id}, {"_id": 1}):
        return error_response("Assignment already submitted", 400)

    now = utc_now()
    due_date = assignment.get("dueDate")
    if due_date is not None and now > due_date and not assignment.get("lateSubmissionAllowed", True):
        return error_response("The due date has passed and late submissions are not allowed", 400)

    data = request_data()
    files = uploaded_files()
    upload_error = validate_uploads(files)
    if upload_error:
        return error_response(upload_error, 400)

    attachments = []
    try:
        attachments = store_uploads(files)
        answers = parse_json_field(data.get('answers'), [])
        submission = {
            "assignment": assignment["_id"],
            "student": student_id,
            "content": data.get('content') or '',
            "answers": answers if isinstance(answers, list) else [],
            "attachments": attachments,
            "submittedAt": now,
            "score": None,
            "feedback": None,
            "status": "submitted",
            "gradedAt": None,
            "gradedBy": None
        }
        submission["_id"] = db.submissions.insert_one(submission).inserted_id
    except DuplicateKeyError:
        delete_attachments(upload_folder(), attachments)
        return error_response("Assignment already submitted", 400)
    except Exception:
        app.logger.exception('Submit assignment error')
        delete_attachments(upload_folder(), attachments)
        return error_response("Failed to submit assignment", 500)

    db.assignments.update_one({"_id": assignment["_id"]}, {"$push": {"submissions": submission["_id"]}})
    db.students.update_one({"_id": student_id},
                           {"$push": {"submissions": submission["_id"]}, "$set": {"lastActive": now}})
    recompute_student_stats(db, student_id)

    return success_response(decorate_submission(submission, assignment),
                            message="Assignment submitted successfully", status=201)


# Grade submission
@app.route('/api/assignments/submissions/<submission_id>/grade', methods=['POST', 'PUT'])
@authenticate
@role_required('teacher')
def grade_submission(submission_id):
    submission_oid = to_object_id(submission_id)
    submission = db.submissions.find_one({"_id": submission_oid}) if submission_oid else None
    if not submission:
        return error_response("Submission not found", 404)

    assignment = db.assignments.find_one({"_id": submission["assignment"]})
    if not assignment or assignment.get("teacher") != current_user_id():
        return error_response("Access denied. You can only grade submissions for your own assignments.", 403)

    data = request.get_json(silent=True) or {}
    score = parse_number(data.get('score'))
    total_points = assignment.get("totalPoints") or 0
    if score is None:
        return error_response("Score must be a number", 400)
    if score < 0 or score > total_points:
        return error_response(f"Score must be between 0 and {total_points}", 400)

    status = data.get('status') or 'graded'
    if status not in SUBMISSION_STATUSES:
        return error_response(f"Status must be one of: {', '.join(SUBMISSION_STATUSES)}", 400)

    # Only grading fields are written
    updated_fields = {
        "score": score,
        "feedback": data.get('feedback') or '',
        "status": status,
        "gradedAt": utc_now(),
        "gradedBy": current_user_id()
    }
    db.submissions.update_one({"_id": submission["_id"]}, {"$set": updated_fields})
    submission.update(updated_fields)
    recompute_student_stats(db, submission["student"])

    student = db.students.find_one({"_id": submission["student"]}, {"name": 1}) or {}
    record_activity(db, current_user_id(), 'assignment_graded', 'Assignment graded',
                    f'Graded "{assignment["title"]}" for {student.get("name", "a student")}',
                    related_id=assignment["_id"], related_model='Assignment',
                    metadata={"submissionId": str(submission["_id"]), "score": score})

    return success_response(decorate_submission(submission, assignment), message="Submission graded successfully")


# ----------- Doubts Endpoints ------------

def get_doubt_for_teacher(doubt_id):
    """Returns (doubt, error_response); the teacher must own the doubt's assignment."""
    doubt_oid = to_object_id(doubt_id)
    doubt = db.doubts.find_one({"_id": doubt_oid}) if doubt_oid else None
    if not doubt:
        return None, error_response("Doubt not found", 404)
    assignment = db.assignments.find_one({"_id": doubt["assignment"]}, {"teacher": 1})
    if not assignment or assignment.get("teacher") != current_user_id():
        return None, error_response("Access denied. Only the assignment's teacher can manage this doubt.", 403)
    return doubt, None


def populate_doubt_students(doubts):
    students = {s["_id"]: s for s in db.students.find(
        {"_id": {"$in": list({d["student"] for d in doubts})}}, {"name": 1, "avatar": 1})}
    for doubt in doubts:
        doubt["student"] = students.get(doubt["student"], {"_id": doubt["student"]})
    return doubts


def create_doubt_for(assignment_id, data):
    assignment_oid = to_object_id(assignment_id)
    assignment = db.assignments.find_one({"_id": assignment_oid}) if assignment_oid else None
    if not assignment:
        return error_response("Assignment not found", 404)

    student_id = current_user_id()
    classroom = db.classrooms.find_one({"_id": assignment["classroom"], "students": student_id},
                                       {"settings": 1})
    if not classroom:
        return error_response("Access denied. You are not enrolled in this classroom.", 403)
    if not (classroom.get("settings") or {}).get("allowStudentQuestions", True):
        return error_response("Questions are disabled for this classroom", 403)

    title = text_field(data, 'title')
    content = text_field(data, 'content') or text_field(data, 'description')
    if not title or not content:
        return error_response("Title and content are required", 400)

    now = utc_now()
    doubt = {
        "title": title,
        "content": content,
        "assignment": assignment["_id"],
        "classroom": assignment["classroom"],
        "student": student_id,
        "subject": data.get('subject') or assignment.get("subject"),
        "status": "pending",
        "isPublic": parse_bool(data.get('isPublic'), True),
        "answer": None,
        "answeredBy": None,
        "answeredAt": None,
        "votes": {"upvotes": 0, "downvotes": 0},
        "voters": [],
        "createdAt": now,
        "updatedAt": now
    }
    doubt["_id"] = db.doubts.insert_one(doubt).inserted_id
    db.assignments.update_one({"_id": assignment["_id"]}, {"$push": {"doubts": doubt["_id"]}})
    db.students.update_one({"_id": student_id}, {"$push": {"doubts": doubt["_id"]}})
    return success_response(doubt, message="Doubt posted successfully", status=201)


# Ask a doubt on an assignment
@app.route('/api/assignments/<assignment_id>/doubts', methods=['POST'])
@authenticate
@role_required('student')
def create_doubt(assignment_id):
    return create_doubt_for(assignment_id, request.get_json(silent=True) or {})


# Ask a doubt, assignment given in the body
@app.route('/api/student/doubts', methods=['POST'])
@authenticate
@role_required('student')
def create_student_doubt():
    data = request.get_json(silent=True) or {}
    if not data.get('assignmentId'):
        return error_response("assignmentId is required", 400)
    return create_doubt_for(data['assignmentId'], data)


# Student's own doubts
@app.route('/api/student/doubts', methods=['GET'])
@authenticate
@role_required('student')
def get_student_doubts():
    doubts = list(db.doubts.find({"student": current_user_id()}).sort("createdAt", DESCENDING))
    return success_response(doubts)


# Doubts for an assignment (teacher: all, student: own and public)
@app.route('/api/assignments/<assignment_id>/doubts', methods=['GET'])
@app.route('/api/doubts/assignment/<assignment_id>', methods=['GET'])
@authenticate
def get_assignment_doubts(assignment_id):
    assignment_oid = to_object_id(assignment_id)
    assignment = db.assignments.find_one({"_id": assignment_oid}) if assignment_oid else None
    if not assignment:
        return error_response("Assignment not found", 404)

    if g.user_role == 'teacher':
        if assignment.get("teacher") != current_user_id():
            return error_response("Assignment not found", 404)
        query = {"assignment": assignment["_id"]}
    else:
        if not db.classrooms.find_one({"_id": assignment["classroom"], "students": current_user_id()}, {"_id": 1}):
            return error_response("Access denied. You are not enrolled in this classroom.", 403)
        query = {"assignment": assignment["_id"],
                 "$or": [{"student": current_user_id()}, {"isPublic": True}]}

    if request.args.get('status'):
        query["status"] = request.args['status']

    page, limit = parse_pagination(request.args, default_limit=20)
    total = db.doubts.count_documents(query)
    doubts = list(db.doubts.find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit))
    return success_response({"doubts": populate_doubt_students(doubts),
                             "pagination": pagination_meta(page, limit, total)})


# Answer doubt
@app.route('/api/doubts/<doubt_id>/answer', methods=['POST'])
@authenticate
@role_required('teacher')
def answer_doubt(doubt_id):
    doubt, error = get_doubt_for_teacher(doubt_id)
    if error:
        return error

    answer = text_field(request.get_json(silent=True) or {}, 'answer')
    if not answer:
        return error_response("Answer is required", 400)

    now = utc_now()
    updated_fields = {"answer": answer, "answeredBy": current_user_id(), "answeredAt": now,
                      "status": "answered", "updatedAt": now}
    db.doubts.update_one({"_id": doubt["_id"]}, {"$set": updated_fields})
    doubt.update(updated_fields)

    record_activity(db, current_user_id(), 'doubt_answered', 'Doubt answered',
                    f'Answered "{doubt["title"]}"', related_id=doubt["_id"], related_model='Doubt',
                    metadata={"assignmentId": str(doubt["assignment"])})
    return success_response(doubt, message="Doubt answered successfully")


# Update doubt status
@app.route('/api/doubts/<doubt_id>/status', methods=['PUT'])
@authenticate
@role_required('teacher')
def update_doubt_status(doubt_id):
    status = (request.get_json(silent=True) or {}).get('status')
    if status not in DOUBT_STATUSES:
        return error_response(f"Status must be one of: {', '.join(DOUBT_STATUSES)}", 400)

    doubt, error = get_doubt_for_teacher(doubt_id)
    if error:
        return error

    db.doubts.update_one({"_id": doubt["_id"]}, {"$set": {"status": status, "updatedAt": utc_now()}})
    doubt["status"] = status
    return success_response(doubt, message="Doubt status updated successfully")


# Delete doubt
@app.route('/api/doubts/<doubt_id>', methods=['DELETE'])
@authenticate
@role_required('teacher')
def delete_doubt(doubt_id):
    doubt, error = get_doubt_for_teacher(doubt_id)
    if error:
        return error

    db.doubts.delete_one({"_id": doubt["_id"]})
    db.assignments.update_one({"_id": doubt["assignment"]}, {"$pull": {"doubts": doubt["_id"]}})
    db.students.update_one({"_id": doubt["student"]}, {"$pull": {"doubts": doubt["_id"]}})
    return success_response(message="Doubt deleted successfully")


# Vote on doubt
@app.route('/api/doubts/<doubt_id>/vote', methods=['POST'])
@authenticate
def vote_doubt(doubt_id):
    vote = (request.get_json(silent=True) or {}).get('vote')
    if vote not in ('up', 'down'):
        return error_response("Vote must be either up or down", 400)

    doubt_oid = to_object_id(doubt_id)
    doubt = db.doubts.find_one({"_id": doubt_oid}) if doubt_oid else None
    if not doubt:
        return error_response("Doubt not found", 404)

    # One vote per user; a re-vote replaces the previous one
    voters = [v for v in doubt.get("voters") or [] if v.get("user") != current_user_id()]
    voters.append({"user": current_user_id(), "userType": g.user_role, "vote": vote})
    votes = {
        "upvotes": sum(1 for v in voters if v["vote"] == 'up'),
        "downvotes": sum(1 for v in voters if v["vote"] == 'down')
    }
    db.doubts.update_one({"_id": doubt["_id"]}, {"$set": {"voters": voters, "votes": votes}})
    return success_response({"votes": votes}, message="Vote recorded")


# ----------- Materials Endpoints ------------

MATERIAL_UPDATE_FIELDS = ['title', 'description', 'subject', 'isPublic', 'isActive']
SUMMARY_CONTENT_LIMIT = 2000


def get_owned_material(material_id):
    material_oid = to_object_id(material_id)
    if material_oid is None:
        return None
    return db.materials.find_one({"_id": material_oid, "teacher": current_user_id()})


def get_accessible_material(material_id):
    material_oid = to_object_id(material_id)
    material = db.materials.find_one({"_id": material_oid, "isActive": True}) if material_oid else None
    if not material:
        return None
    if g.user_role == 'teacher':
        return material if material["teacher"] == current_user_id() or material.get("isPublic") else None
    if material.get("isPublic") or material.get("classroom") in (g.current_user.get("classrooms") or []):
        return material
    return None


def summarize_material(stored, title, description):
    """Best-effort AI summary for text and PDF uploads."""
    file_type = stored["fileType"]
    if 'text' not in file_type and 'pdf' not in file_type:
        return None
    try:
        if file_type == 'application/pdf':
            with open(os.path.join(upload_folder(), stored["storageId"]), 'rb') as handle:
                content = extract_pdf_text(handle)
        else:
            content = read_stored_text(upload_folder(), stored["storageId"], SUMMARY_CONTENT_LIMIT)
        content = content or f"{title} {description}"
        return gemini_service.generate_material_summary(content, file_type)
    except (AIServiceError, StorageError, OSError) as e:
        app.logger.warning('AI summary generation failed for "%s": %s', title, e)
        return None


# Upload material
@app.route('/api/materials/upload', methods=['POST'])
@authenticate
@role_required('teacher')
def upload_material():
    file = request.files.get('file')
    if not file or not file.filename:
        return error_response("No file uploaded", 400)
    if not is_allowed_file(file):
        return error_response(INVALID_TYPE_MESSAGE, 400)

    data = request.form.to_dict()
    title = (data.get('title') or file.filename).strip()
    subject = (data.get('subject') or '').strip()
    if not subject:
        return error_response("Subject is required", 400)

    classroom_oid = None
    if data.get('classroomId'):
        classroom = get_owned_classroom(data['classroomId'])
        if not classroom:
            return error_response("Classroom not found or access denied", 404)
        classroom_oid = classroom["_id"]

    stored = None
    try:
        stored = save_upload(file, upload_folder())
        now = utc_now()
        material = {
            "title": title,
            "description": (data.get('description') or '').strip(),
            "subject": subject,
            "teacher": current_user_id(),
            "classroom": classroom_oid,
            **stored,
            "aiSummary": summarize_material(stored, title, data.get('description') or ''),
            "isPublic": parse_bool(data.get('isPublic'), False),
            "isActive": True,
            "downloads": [],
            "views": [],
            "downloadCount": 0,
            "createdAt": now,
            "updatedAt": now
        }
        material["_id"] = db.materials.insert_one(material).inserted_id
    except Exception:
        app.logger.exception('Material upload error')
        # Clean up stored file if the record failed to save
        if stored:
            delete_stored_file(upload_folder(), stored["storageId"])
        return error_response("Failed to upload material", 500)

    record_activity(db, current_user_id(), 'material_uploaded', 'New material uploaded',
                    f'Uploaded "{title}" for {subject}', related_id=material["_id"], related_model='Material',
                    metadata={"subject": subject, "fileType": material["fileType"],
                              "classroomId": str(classroom_oid) if classroom_oid else None})
    return success_response(material, message="Material uploaded successfully", status=201)


# Get materials (teacher: own, student: public or from enrolled classrooms)
@app.route('/api/materials', methods=['GET'])
@authenticate
def get_materials():
    page, limit = parse_pagination(request.args)
    if g.user_role == 'teacher':
        query = {"teacher": current_user_id()}
        if request.args.get('subject'):
            query["subject"] = request.args['subject']
    else:
        query = {"isActive": True,
                 "$or": [{"isPublic": True}, {"classroom": {"$in": g.current_user.get("classrooms") or []}}]}
        if request.args.get('subject'):
            query["subject"] = {"$regex": request.args['subject'], "$options": "i"}
    if request.args.get('classroomId'):
        classroom_oid = to_object_id(request.args['classroomId'])
        if classroom_oid is None:
            return error_response("Invalid classroomId", 400)
        query["classroom"] = classroom_oid

    total = db.materials.count_documents(query)
    materials = list(db.materials.find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit))

    if g.user_role == 'student':
        student_id = current_user_id()
        for material in materials:
            material["hasViewed"] = any(v.get("student") == student_id for v in material.get("views") or [])
            material["hasDownloaded"] = any(d.get("student") == student_id for d in material.get("downloads") or [])
            # Other students' activity stays private
            material.pop("views", None)
            material.pop("downloads", None)

    return success_response({"materials": materials, "pagination": pagination_meta(page, limit, total)})


# Get material
@app.route('/api/materials/<material_id>', methods=['GET'])
@authenticate
@role_required('teacher')
def get_material(material_id):
    material = get_owned_material(material_id)
    if not material:
        return error_response("Material not found", 404)
    return success_response(material)


# Update material
@app.route('/api/materials/<material_id>', methods=['PUT'])
@authenticate
@role_required('teacher')
def update_material(material_id):
    material = get_owned_material(material_id)
    if not material:
        return error_response("Material not found", 404)

    data = request.get_json(silent=True) or {}
    updated_fields = {field: data[field] for field in MATERIAL_UPDATE_FIELDS if field in data}
    for flag in ('isPublic', 'isActive'):
        if flag in updated_fields:
            updated_fields[flag] = parse_bool(updated_fields[flag])
    if 'title' in updated_fields and not str(updated_fields['title']).strip():
        return error_response("Title cannot be empty", 400)
    if 'classroomId' in data:
        if data['classroomId']:
            classroom = get_owned_classroom(data['classroomId'])
            if not classroom:
                return error_response("Classroom not found or access denied", 404)
            updated_fields["classroom"] = classroom["_id"]
        else:
            updated_fields["classroom"] = None

    if not updated_fields:
        return error_response("No valid fields to update", 400)

    updated_fields["updatedAt"] = utc_now()
    db.materials.update_one({"_id": material["_id"]}, {"$set": updated_fields})
    material.update(updated_fields)
    return success_response(material, message="Material updated successfully")


# Delete material
@app.route('/api/materials/<material_id>', methods=['DELETE'])
@authenticate
@role_required('teacher')
def delete_material(material_id):
    material = get_owned_material(material_id)
    if not material:
        return error_response("Material not found", 404)

    delete_stored_file(upload_folder(), material.get("storageId"))
    db.materials.delete_one({"_id": material["_id"]})
    return success_response(message="Material deleted successfully")


# Track download
@app.route('/api/materials/<material_id>/download', methods=['POST'])
@authenticate
def track_download(material_id):
    material = get_accessible_material(material_id)
    if not material:
        return error_response("Material not found", 404)

    if g.user_role == 'student':
        student_id = current_user_id()
        db.materials.update_one({"_id": material["_id"]}, {"$inc": {"downloadCount": 1}})
        # One download entry per student
        db.materials.update_one(
            {"_id": material["_id"], "downloads.student": {"$ne": student_id}},
            {"$push": {"downloads": {"student": student_id, "downloadedAt": utc_now()}}}
        )

    return success_response({"downloadUrl": material["fileUrl"], "filename": material.get("fileName")},
                            message="Download tracked")


# Track view
@app.route('/api/materials/<material_id>/view', methods=['POST'])
@authenticate
def track_view(material_id):
    material = get_accessible_material(material_id)
    if not material:
        return error_response("Material not found", 404)

    duration = parse_number((request.get_json(silent=True) or {}).get('duration', 0)) or 0
    if duration < 0:
        return error_response("Duration cannot be negative", 400)

    if g.user_role == 'student':
        student_id = current_user_id()
        now = utc_now()
        existing = next((v for v in material.get("views") or [] if v.get("student") == student_id), None)
        if existing:
            longest = max(existing.get("duration") or 0, duration)
            db.materials.update_one(
                {"_id": material["_id"], "views.student": student_id},
                {"$set": {"views.$.duration": longest, "views.$.completed": longest > 0,
                          "views.$.viewedAt": now}}
            )
        else:
            db.materials.update_one(
                {"_id": material["_id"], "views.student": {"$ne": student_id}},
                {"$push": {"views": {"student": student_id, "duration": duration,
                                     "completed": duration > 0, "viewedAt": now}}}
            )
        material = db.materials.find_one({"_id": material["_id"]})
        material.pop("downloads", None)
        material["views"] = [v for v in material.get("views") or [] if v.get("student") == student_id]

    return success_response(material, message="View tracked")


# Serve stored file
@app.route('/api/files/<path:filename>', methods=['GET'])
@authenticate
def serve_file(filename):
    return send_from_directory(upload_folder(), filename)


# ----------- AI Assistant Endpoints ------------

def attachment_context(attachments):
    parts = []
    for attachment in attachments:
        if not isinstance(attachment, dict):
            continue
        name = attachment.get('name') or 'attachment'
        file_type = attachment.get('type') or ''
        if file_type in IMAGE_MIMETYPES or file_type.startswith('image/'):
            parts.append(f"[Image: {name}] - Please analyze this image and answer questions about it.")
        elif file_type == 'application/pdf':
            content = str(attachment.get('content') or '')[:PDF_CONTEXT_LIMIT]
            parts.append(f"[PDF Document: {name}]\nContent: {content}...")
        else:
            parts.append(f"[File: {name}]")
    return "\n\n".join(parts)


# Chat with AI assistant
@app.route('/api/ai-assistant/chat', methods=['POST'])
@authenticate
def chat_with_ai():
    data = request.get_json(silent=True) or {}
    message = text_field(data, 'message')
    if not message:
        return error_response("Message is required", 400)

    context = data.get('context') if isinstance(data.get('context'), dict) else {}
    attachments = context.get('attachments') if isinstance(context.get('attachments'), list) else []
    if attachments:
        message = f"{attachment_context(attachments)}\n\nUser Question: {message}"

    try:
        response = gemini_service.generate_response(message, {
            "userRole": g.user_role,
            "subject": context.get('subject'),
            "hasAttachments": bool(attachments)
        })
    except AIServiceError:
        app.logger.exception('AI chat error')
        return error_response("Failed to generate AI response", 500)

    return success_response({"message": response, "timestamp": utc_now()})


def quiz_request():
    data = request.get_json(silent=True) or {}
    topic = text_field(data, 'topic')
    count = parse_number(data.get('questionCount', 5))
    count = int(count) if count is not None else 5
    return data, topic, count


# Generate quiz (teachers only)
@app.route('/api/ai-assistant/generate-quiz', methods=['POST'])
@authenticate
def generate_quiz():
    if g.user_role != 'teacher':
        return error_response("Only teachers can generate quizzes", 403)

    data, topic, question_count = quiz_request()
    if not topic:
        return error_response("Topic is required", 400)
    if not 1 <= question_count <= 50:
        return error_response("Question count must be between 1 and 50", 400)
    difficulty = data.get('difficulty') or 'medium'
    if difficulty not in DIFFICULTIES:
        return error_response(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}", 400)

    try:
        quiz = gemini_service.generate_quiz(topic, difficulty, question_count)
    except AIServiceError:
        app.logger.exception('Quiz generation error')
        return error_response("Failed to generate quiz", 500)

    record_activity(db, current_user_id(), 'quiz_generated', 'Quiz generated',
                    f'Generated a {difficulty} quiz about {topic}',
                    metadata={"topic": topic, "difficulty": difficulty, "questionCount": question_count})
    return success_response({
        "quiz": quiz,
        "topic": topic,
        "difficulty": difficulty,
        "questionCount": question_count,
        "timestamp": utc_now(),
        "message": f"Generated {question_count} {difficulty} difficulty questions about {topic}"
    })


# Generate structured quiz questions (teachers only)
@app.route('/api/ai-assistant/generate-quiz-questions', methods=['POST'])
@authenticate
@role_required('teacher')
def generate_quiz_questions():
    data, topic, question_count = quiz_request()
    if not topic:
        return error_response("Topic is required", 400)
    if not 1 <= question_count <= 50:
        return error_response("Question count must be between 1 and 50", 400)

    teacher = g.current_user
    grades = sorted({c.get("grade") for c in db.classrooms.find({"teacher": teacher["_id"]}, {"grade": 1})
                     if c.get("grade")})
    subjects = teacher.get("specialization") or sorted(
        {c.get("subject") for c in db.classrooms.find({"teacher": teacher["_id"]}, {"subject": 1}) if c.get("subject")})
    try:
        questions = gemini_service.generate_quiz_questions(topic, question_count, {
            "name": teacher.get("name"),
            "subjects": subjects,
            "gradeLevels": grades
        })
    except AIServiceError:
        app.logger.exception('Quiz question generation error')
        return error_response("Failed to generate quiz questions", 500)

    record_activity(db, teacher["_id"], 'quiz_generated', 'Quiz generated',
                    f'Generated {len(questions)} questions about {topic}',
                    metadata={"topic": topic, "questionCount": len(questions)})
    return success_response({"topic": topic, "questions": questions, "timestamp": utc_now()})


# Generate material summary (teachers only)
@app.route('/api/ai-assistant/generate-summary', methods=['POST'])
@authenticate
def generate_summary():
    if g.user_role != 'teacher':
        return error_response("Only teachers can generate material summaries", 403)

    data = request.get_json(silent=True) or {}
    content = text_field(data, 'content')
    if not content:
        return error_response("Content is required", 400)

    try:
        summary = gemini_service.generate_material_summary(content, data.get('materialType'))
    except AIServiceError:
        app.logger.exception('Material summary error')
        return error_response("Failed to generate material summary", 500)

    return success_response({"summary": summary, "timestamp": utc_now()})


# Extract text from PDF
@app.route('/api/ai-assistant/extract-text', methods=['POST'])
@authenticate
def extract_text():
    file = request.files.get('file')
    if not file or not file.filename:
        return error_response("No file uploaded", 400)
    if file.mimetype != 'application/pdf':
        return error_response("Unsupported file type. Only PDF files are supported for text extraction.", 400)

    data = file.read()
    try:
        text = extract_pdf_text(data)
    except StorageError:
        app.logger.exception('PDF parsing error')
        return error_response("Failed to extract text from PDF", 500)

    return success_response({"text": text, "filename": file.filename, "fileSize": len(data)})


# ----------- Dashboard Endpoints ------------

# Teacher dashboard statistics
@app.route('/api/dashboard/stats', methods=['GET'])
@authenticate
@role_required('teacher')
def get_dashboard_stats():
    return success_response(dashboard_stats(db, current_user_id()))


# Recent activity
@app.route('/api/dashboard/recent-activity', methods=['GET'])
@authenticate
@role_required('teacher')
def get_recent_activity():
    _, limit = parse_pagination(request.args, default_limit=10, max_limit=50)
    activities = db.recent_activities.find({"teacherId": current_user_id()}) \
        .sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).limit(limit)
    return success_response(list(activities))


# Teacher overview
@app.route('/api/dashboard/overview', methods=['GET'])
@authenticate
@role_required('teacher')
def get_teacher_overview():
    teacher_id = current_user_id()
    classrooms = list(db.classrooms.find({"teacher": teacher_id}).sort("createdAt", DESCENDING))
    for classroom in classrooms:
        classroom["students"] = roster_students(classroom, {"name": 1, "email": 1, "avatar": 1})

    return success_response({
        "teacher": g.current_user,
        "stats": dashboard_stats(db, teacher_id),
        "classrooms": classrooms,
        "recentAssignments": list(db.assignments.find({"teacher": teacher_id}, {"submissions": 0})
                                  .sort("createdAt", DESCENDING).limit(5)),
        "recentMaterials": list(db.materials.find({"teacher": teacher_id}, {"views": 0, "downloads": 0})
                                .sort("createdAt", DESCENDING).limit(5)),
        "recentActivity": list(db.recent_activities.find({"teacherId": teacher_id})
                               .sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).limit(5))
    })


# ----------- Profile Endpoints ------------

def profile_update_fields(data, allowed):
    updated_fields = {field: data[field] for field in allowed if field in data}
    if 'name' in data:
        name = str(data['name'] or '').strip()
        if not name:
            return None, "Name cannot be empty"
        updated_fields["name"] = name
    if 'email' in data:
        email = str(data['email'] or '').strip().lower()
        if not email:
            return None, "Email cannot be empty"
        collection = USER_COLLECTIONS[g.user_role]
        taken = db[collection].find_one({"email": email, "_id": {"$ne": current_user_id()}}, {"_id": 1})
        if taken:
            return None, "Email is already in use"
        updated_fields["email"] = email
    return updated_fields, None


def save_profile(updated_fields):
    if not updated_fields:
        return error_response("No valid fields to update", 400)
    updated_fields["updatedAt"] = utc_now()
    collection = USER_COLLECTIONS[g.user_role]
    db[collection].update_one({"_id": current_user_id()}, {"$set": updated_fields})
    user = db[collection].find_one({"_id": current_user_id()})
    return success_response(user_payload(user, g.user_role), message="Profile updated successfully")


# Get profile
@app.route('/api/profile', methods=['GET'])
@authenticate
def get_profile():
    user = user_payload(g.current_user, g.user_role)
    if g.user_role == 'teacher':
        user["stats"] = {**(g.current_user.get("stats") or {}), **teacher_performance(db, current_user_id())}
    return success_response(user)


# Update teacher profile
@app.route('/api/profile', methods=['PUT'])
@authenticate
@role_required('teacher')
def update_profile():
    data = request.get_json(silent=True) or {}
    updated_fields, error = profile_update_fields(data, TEACHER_PROFILE_FIELDS)
    if error:
        return error_response(error, 400)
    if 'specialization' in updated_fields and not isinstance(updated_fields['specialization'], list):
        updated_fields['specialization'] = [s.strip() for s in str(updated_fields['specialization']).split(',')
                                            if s.strip()]
    return save_profile(updated_fields)


# Change password
@app.route('/api/profile/change-password', methods=['POST'])
@authenticate
def change_password():
    data = request.get_json(silent=True) or {}
    current_password = text_field(data, 'currentPassword', strip=False)
    new_password = text_field(data, 'newPassword', strip=False)
    if not current_password or not new_password:
        return error_response("Current password and new password are required", 400)
    if len(new_password) < 6:
        return error_response("Password must be at least 6 characters long", 400)
    if not check_password(current_password, g.current_user.get('password')):
        return error_response("Current password is incorrect", 400)

    db[USER_COLLECTIONS[g.user_role]].update_one(
        {"_id": current_user_id()},
        {"$set": {"password": hash_password(new_password), "updatedAt": utc_now()}}
    )
    return success_response(message="Password changed successfully")


# Upload avatar
@app.route('/api/profile/avatar', methods=['POST'])
@authenticate
def upload_avatar():
    file = request.files.get('avatar')
    if not file or not file.filename:
        return error_response("No file uploaded", 400)
    if not is_allowed_file(file, IMAGE_MIMETYPES):
        return error_response("Avatar must be an image", 400)

    try:
        stored = save_upload(file, upload_folder())
    except StorageError:
        app.logger.exception('Avatar upload error')
        return error_response("Failed to upload avatar", 500)

    previous = g.current_user.get("avatarStorageId")
    db[USER_COLLECTIONS[g.user_role]].update_one(
        {"_id": current_user_id()},
        {"$set": {"avatar": stored["fileUrl"], "avatarStorageId": stored["storageId"], "updatedAt": utc_now()}}
    )
    if previous:
        delete_stored_file(upload_folder(), previous)
    return success_response({"avatar": stored["fileUrl"]}, message="Avatar updated successfully")


# Teacher performance
@app.route('/api/profile/performance', methods=['GET'])
@authenticate
@role_required('teacher')
def get_teacher_performance():
    return success_response(teacher_performance(db, current_user_id()))


# ----------- Student Endpoints ------------

def achievements(badges):
    return [{"name": badge, "description": BADGE_DESCRIPTIONS.get(badge, 'Special achievement')}
            for badge in badges or []]


def subject_performance(student_id):
    submissions = list(db.submissions.find({"student": student_id, "status": "graded"},
                                           {"assignment": 1, "score": 1}))
    assignments = {a["_id"]: a for a in db.assignments.find(
        {"_id": {"$in": [s["assignment"] for s in submissions]}}, {"subject": 1, "totalPoints": 1})}

    by_subject = {}
    for submission in submissions:
        assignment = assignments.get(submission["assignment"])
        if not assignment:
            continue
        percentage = submission_percentage(submission.get("score"), assignment.get("totalPoints"))
        if percentage is not None:
            by_subject.setdefault(assignment.get("subject") or 'General', []).append(percentage)

    return [{"subject": subject, "averageScore": round_half_up(sum(scores) / len(scores)), "graded": len(scores)}
            for subject, scores in sorted(by_subject.items())]


# Student profile
@app.route('/api/student/profile', methods=['GET'])
@authenticate
@role_required('student')
def get_student_profile():
    return success_response(user_payload(g.current_user, 'student'))


# Update student profile
@app.route('/api/student/profile', methods=['PUT'])
@authenticate
@role_required('student')
def update_student_profile():
    data = request.get_json(silent=True) or {}
    updated_fields, error = profile_update_fields(data, STUDENT_PROFILE_FIELDS)
    if error:
        return error_response(error, 400)
    return save_profile(updated_fields)


# Update streak
@app.route('/api/student/streak', methods=['POST'])
@authenticate
@role_required('student')
def update_student_streak():
    student = update_streak(db, current_user_id())
    return success_response({
        "streak": student["stats"]["streak"],
        "longestStreak": student["stats"]["longestStreak"]
    }, message="Streak updated successfully")


# Recompute student stats
@app.route('/api/student/stats/update', methods=['POST'])
@authenticate
@role_required('student')
def update_student_stats():
    student = recompute_student_stats(db, current_user_id())
    if not student:
        return error_response("Student not found", 404)
    return success_response({"stats": student["stats"], "badges": student.get("badges", [])},
                            message="Stats updated successfully")


# Student dashboard
@app.route('/api/student/dashboard', methods=['GET'])
@app.route('/api/student/stats/dashboard', methods=['GET'])
@authenticate
@role_required('student')
def get_student_dashboard():
    # Visiting the dashboard counts toward the streak
    student = update_streak(db, current_user_id())
    classrooms = student.get("classrooms") or []

    recent_assignments = list(db.assignments.find({"classroom": {"$in": classrooms}, "status": "active"},
                                                  {"submissions": 0, "questions": 0})
                              .sort("createdAt", DESCENDING).limit(5))

    now = utc_now()
    submitted_ids = {s["assignment"] for s in db.submissions.find({"student": student["_id"]}, {"assignment": 1})}
    upcoming = []
    for assignment in db.assignments.find({"classroom": {"$in": classrooms}, "status": "active",
                                           "dueDate": {"$gte": now}}, {"title": 1, "subject": 1, "dueDate": 1}) \
            .sort("dueDate", ASCENDING):
        if assignment["_id"] in submitted_ids:
            continue
        assignment["daysLeft"] = max(0, (assignment["dueDate"] - now).days)
        upcoming.append(assignment)
        if len(upcoming) == 3:
            break

    return success_response({
        "student": {
            "name": student.get("name"),
            "grade": student.get("grade"),
            "avatar": student.get("avatar")
        },
        "stats": student.get("stats") or default_student_stats(),
        "badges": student.get("badges") or [],
        "recentAssignments": recent_assignments,
        "upcomingDeadlines": upcoming
    })


# Student performance
@app.route('/api/student/performance', methods=['GET'])
@authenticate
@role_required('student')
def get_student_performance():
    student = g.current_user
    stats = student.get("stats") or default_student_stats()
    return success_response({
        "overview": {
            "averageScore": stats.get("averageScore", 0),
            "rank": stats.get("rank"),
            "totalPoints": stats.get("totalPoints", 0),
            "level": stats.get("level", 1),
            "streak": stats.get("streak", 0),
            "completionRate": completion_percentage(stats)
        },
        "subjectPerformance": subject_performance(student["_id"]),
        "achievements": achievements(student.get("badges"))
    })


# ----------- Health ------------

@app.route('/api/health', methods=['GET'])
def health_check():
    return jsonify({"status": "OK", "timestamp": utc_now().isoformat()}), 200


if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true', port=int(os.getenv('PORT', 5000)))
