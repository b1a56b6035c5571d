import pytest
import sys
import os
import random
import mongomock
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from seed_data import SEED_PASSWORD, seed
from app import ensure_indexes

@pytest.fixture
def seeded():
    db = mongomock.MongoClient()["seed_test"]
    db.students.insert_one({"name": "Leftover"})
    counts = seed(db, rng=random.Random(1), rounds=4)
    ensure_indexes(db)
    return db, counts

def test_seed_counts(seeded):
    db, counts = seeded
    assert counts["teachers"] == 3
    assert counts["students"] == 5
    assert counts["classrooms"] == 6
    assert counts["assignments"] == 12
    assert counts["submissions"] == db.submissions.count_documents({})
    assert db.students.find_one({"name": "Leftover"}) is None

def test_seed_rosters_are_consistent(seeded):
    db, _ = seeded
    for classroom in db.classrooms.find():
        assert len(classroom["inviteCode"]) == 8
        for student_id in classroom["students"]:
            assert classroom["_id"] in db.students.find_one({"_id": student_id})["classrooms"]
        teacher = db.teachers.find_one({"_id": classroom["teacher"]})
        assert classroom["_id"] in teacher["classrooms"]

def test_seed_recomputes_stats(seeded):
    db, _ = seeded
    for student in db.students.find():
        assert 1 <= student["stats"]["rank"] <= 5
        assert student["stats"]["totalAssignments"] == db.submissions.count_documents({"student": student["_id"]})

def test_seeded_users_can_log_in(seeded, client, monkeypatch):
    db, _ = seeded
    import app as app_module
    monkeypatch.setattr(app_module, "db", db)
    response = client.post('/api/auth/login', json={"email": "alice@student.com", "password": SEED_PASSWORD,
                                                    "role": "student"})
    assert response.status_code == 200
