import pytest
import sys
import os
from datetime import datetime, timedelta
import mongomock
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import stats
from stats import (ACTIVITY_LIMIT, apply_streak, assignment_submission_counts, classroom_stats, create_activity,
                   default_student_stats, derive_badges, effective_submission_status, letter_grade,
                   record_activity, recompute_student_stats, submission_percentage)

NOW = datetime(2024, 3, 10, 12, 0, 0)

@pytest.fixture
def mock_db():
    return mongomock.MongoClient()["stats_test"]

def add_student(db, name, **stats_overrides):
    student_stats = default_student_stats()
    student_stats.update(stats_overrides)
    return db.students.insert_one({"name": name, "stats": student_stats, "badges": []}).inserted_id

def add_graded(db, student_id, score, total_points=100, status="graded"):
    assignment_id = db.assignments.insert_one({"title": "A", "totalPoints": total_points}).inserted_id
    db.submissions.insert_one({"assignment": assignment_id, "student": student_id, "score": score, "status": status})
    return assignment_id

# ---------- GRADES ----------

@pytest.mark.parametrize("percentage,expected", [(95, "A"), (90, "A"), (89, "B"), (80, "B"), (75, "C"),
                                                 (60, "D"), (59, "F"), (0, "F"), (None, None)])
def test_letter_grade(percentage, expected):
    assert letter_grade(percentage) == expected

def test_submission_percentage():
    assert submission_percentage(17, 20) == 85
    assert submission_percentage(2, 3) == 67
    assert submission_percentage(None, 100) is None
    assert submission_percentage(5, 0) is None

def test_derive_badges():
    assert derive_badges(0, 0, 0) == []
    assert derive_badges(90, 5, 7) == ["achiever", "dedicated", "consistent"]
    assert derive_badges(89, 4, 6) == []

# ---------- STREAK ----------

def test_first_visit_starts_streak():
    assert apply_streak({"streak": 0, "longestStreak": 0}, None, NOW) == (1, 1)

def test_same_day_visit_keeps_streak():
    assert apply_streak({"streak": 3, "longestStreak": 5}, NOW - timedelta(hours=5), NOW) == (3, 5)

def test_next_day_visit_extends_streak():
    assert apply_streak({"streak": 5, "longestStreak": 5}, NOW - timedelta(days=1), NOW) == (6, 6)
    assert apply_streak({"streak": 2, "longestStreak": 9}, NOW - timedelta(hours=30), NOW) == (3, 9)

def test_missed_day_resets_streak():
    assert apply_streak({"streak": 8, "longestStreak": 8}, NOW - timedelta(days=3), NOW) == (1, 8)

# ---------- STUDENT STATS ----------

def test_recompute_student_stats(mock_db):
    student_id = add_student(mock_db, "Alice")
    add_graded(mock_db, student_id, 80)
    add_graded(mock_db, student_id, 45, total_points=50)
    add_graded(mock_db, student_id, None, status="submitted")

    student = recompute_student_stats(mock_db, student_id)
    assert student["stats"]["totalAssignments"] == 3
    assert student["stats"]["completedAssignments"] == 3
    assert student["stats"]["pendingAssignments"] == 0
    assert student["stats"]["averageScore"] == 85
    assert student["stats"]["totalPoints"] == 125
    assert student["stats"]["rank"] == 1
    assert student["stats"]["level"] == 1

def test_zero_point_assignments_are_excluded(mock_db):
    student_id = add_student(mock_db, "Bob")
    add_graded(mock_db, student_id, 70)
    add_graded(mock_db, student_id, 10, total_points=0)

    student = recompute_student_stats(mock_db, student_id)
    assert student["stats"]["averageScore"] == 70
    assert student["stats"]["totalPoints"] == 70

def test_badges_are_overwritten(mock_db):
    student_id = add_student(mock_db, "Carol", streak=7)
    mock_db.students.update_one({"_id": student_id}, {"$set": {"badges": ["helper", "achiever"]}})
    add_graded(mock_db, student_id, 50)

    student = recompute_student_stats(mock_db, student_id)
    assert student["badges"] == ["consistent"]
    assert student["stats"]["streak"] == 7

def test_rank_uses_average_then_points(mock_db):
    add_student(mock_db, "Top", averageScore=95, totalPoints=100)
    add_student(mock_db, "Tied more points", averageScore=80, totalPoints=400)
    student_id = add_student(mock_db, "Me")
    add_graded(mock_db, student_id, 80)

    student = recompute_student_stats(mock_db, student_id)
    assert student["stats"]["rank"] == 3

def test_recompute_unknown_student(mock_db):
    assert recompute_student_stats(mock_db, "missing") is None

def test_update_streak_sets_last_active(mock_db):
    student_id = add_student(mock_db, "Dan")
    student = stats.update_streak(mock_db, student_id, now=NOW)
    assert student["stats"]["streak"] == 1
    assert student["streakLastUpdated"] == NOW
    assert student["lastActive"] == NOW

def test_update_streak_awards_consistent_badge(mock_db):
    student_id = add_student(mock_db, "Erin", streak=6, longestStreak=6, averageScore=92)
    mock_db.students.update_one({"_id": student_id}, {"$set": {"streakLastUpdated": NOW - timedelta(days=1)}})

    student = stats.update_streak(mock_db, student_id, now=NOW)
    assert student["stats"]["streak"] == 7
    assert student["badges"] == ["achiever", "consistent"]

def test_recompute_is_idempotent(mock_db):
    student_id = add_student(mock_db, "Fay", streak=3)
    add_graded(mock_db, student_id, 72)
    add_graded(mock_db, student_id, 18, total_points=20)

    first = recompute_student_stats(mock_db, student_id)
    second = recompute_student_stats(mock_db, student_id)
    assert first["stats"] == second["stats"]
    assert first["badges"] == second["badges"]

# ---------- ASSIGNMENTS / CLASSROOMS ----------

def test_assignment_submission_counts():
    assignment = {"submissions": ["s1", "s2"], "dueDate": NOW - timedelta(days=1)}
    counts = assignment_submission_counts(assignment, 5, NOW)
    assert counts == {"totalStudents": 5, "submittedCount": 2, "pendingCount": 3, "overdueCount": 3,
                      "isOverdue": True}

    assignment["dueDate"] = NOW + timedelta(days=1)
    assert assignment_submission_counts(assignment, 1, NOW)["overdueCount"] == 0
    assert assignment_submission_counts(assignment, 1, NOW)["pendingCount"] == 0

def test_effective_status():
    assignment = {"dueDate": NOW}
    assert effective_submission_status({"status": "submitted", "submittedAt": NOW + timedelta(minutes=1)},
                                       assignment) == "late"
    assert effective_submission_status({"status": "submitted", "submittedAt": NOW}, assignment) == "submitted"
    assert effective_submission_status({"status": "graded", "submittedAt": NOW + timedelta(days=1)},
                                       assignment) == "graded"

def test_classroom_stats():
    students = [{"stats": {"averageScore": 80, "completedAssignments": 2}},
                {"stats": {"averageScore": 0, "completedAssignments": 1}},
                {"stats": {"averageScore": 91, "completedAssignments": 0}}]
    result = classroom_stats(students, 2, 4)
    assert result["totalStudents"] == 3
    assert result["averageScore"] == 86
    assert result["completionRate"] == 50
    assert classroom_stats([], 2, 0)["averageScore"] == 0

# ---------- ACTIVITY ----------

def test_activity_is_trimmed(mock_db):
    teacher_id = "teacher-1"
    for i in range(ACTIVITY_LIMIT + 5):
        create_activity(mock_db, teacher_id, "classroom_created", f"Class {i}", "created")
    create_activity(mock_db, "teacher-2", "quiz_generated", "Quiz", "generated")

    assert mock_db.recent_activities.count_documents({"teacherId": teacher_id}) == ACTIVITY_LIMIT
    assert mock_db.recent_activities.count_documents({"teacherId": "teacher-2"}) == 1
    titles = {a["title"] for a in mock_db.recent_activities.find({"teacherId": teacher_id})}
    assert "Class 0" not in titles
    assert f"Class {ACTIVITY_LIMIT + 4}" in titles

def test_unknown_activity_type(mock_db):
    with pytest.raises(ValueError):
        create_activity(mock_db, "teacher-1", "party_thrown", "T", "D")

def test_record_activity_swallows_failures(mock_db):
    assert record_activity(mock_db, "teacher-1", "party_thrown", "T", "D") is None
    assert record_activity(mock_db, "teacher-1", "doubt_answered", "T", "D")["type"] == "doubt_answered"
