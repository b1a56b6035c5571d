import os
import random
from datetime import timedelta

import bcrypt
from dotenv import load_dotenv
from pymongo import MongoClient

from helpers import utc_now
from pin_utils import generate_unique_code
from stats import default_student_stats, default_teacher_stats, recompute_student_stats

SEED_PASSWORD = "password123"

# Subjects list
subjects = ["Mathematics", "Physics", "Biology", "History", "Chemistry", "English", "Computer Science"]
maths_topics = ["Algebraic Expressions and Equations", "Trigonometry: Sine, Cosine, Tangent", "Probability and Statistics"]
physics_topics = ["Newton's Laws of Motion", "Electricity and Circuits", "Optics: Reflection and Refraction"]
biology_topics = ["Cell Structure and Function", "Genetics and Heredity", "Photosynthesis and Respiration"]
history_topics = ["The Industrial Revolution", "World Wars I and II", "The Cold War Era"]
chemistry_topics = ["Atomic Structure and Periodic Table", "Acid-Base Reactions and pH", "Chemical Bonding"]
english_topics = ["Shakespeare and His Works", "Writing Essays and Arguments", "Literary Devices"]
computer_science_topics = ["Algorithms and Data Structures", "Databases and SQL", "Web Development"]

topics = {
    "Mathematics": maths_topics,
    "Physics": physics_topics,
    "Biology": biology_topics,
    "History": history_topics,
    "Chemistry": chemistry_topics,
    "English": english_topics,
    "Computer Science": computer_science_topics
}

teachers_data = [
    {"username": "johnsmith", "name": "John Smith", "email": "john@teacher.com", "department": "Mathematics",
     "qualification": "M.Sc. Mathematics", "experience": 8, "specialization": ["Mathematics", "Physics"]},
    {"username": "sarahjohnson", "name": "Sarah Johnson", "email": "sarah@teacher.com", "department": "Science",
     "qualification": "Ph.D. Biology", "experience": 12, "specialization": ["Biology", "Chemistry"]},
    {"username": "mikedavis", "name": "Mike Davis", "email": "mike@teacher.com", "department": "Humanities",
     "qualification": "M.A. History", "experience": 5, "specialization": ["History", "English"]},
]

students_data = [
    {"username": "alicew", "name": "Alice Wilson", "email": "alice@student.com", "studentId": "STU001",
     "grade": "10th", "rollNumber": "10A01"},
    {"username": "bobd", "name": "Bob Davis", "email": "bob@student.com", "studentId": "STU002",
     "grade": "10th", "rollNumber": "10A02"},
    {"username": "carolm", "name": "Carol Martinez", "email": "carol@student.com", "studentId": "STU003",
     "grade": "11th", "rollNumber": "11B01"},
    {"username": "danielk", "name": "Daniel Kim", "email": "daniel@student.com", "studentId": "STU004",
     "grade": "11th", "rollNumber": "11B02"},
    {"username": "emman", "name": "Emma Nolan", "email": "emma@student.com", "studentId": "STU005",
     "grade": "10th", "rollNumber": "10A03"},
]

COLLECTIONS = ["teachers", "students", "classrooms", "assignments", "submissions", "materials", "doubts",
               "recent_activities", "verification_codes"]


def hash_password(password, rounds=12):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


def seed(db, rng=None, rounds=12):
    """Drop and repopulate every collection with demo data. Returns inserted counts."""
    rng = rng or random.Random()
    now = utc_now()

    # Drop collections
    for name in COLLECTIONS:
        db[name].drop()

    password = hash_password(SEED_PASSWORD, rounds)

    teachers = []
    for data in teachers_data:
        teacher = {**data, "password": password, "avatar": None, "phone": None, "address": None, "bio": None,
                   "classrooms": [], "stats": default_teacher_stats(), "badges": [],
                   "createdAt": now, "updatedAt": now}
        teacher["_id"] = db.teachers.insert_one(teacher).inserted_id
        teachers.append(teacher)

    students = []
    for data in students_data:
        student = {**data, "password": password, "avatar": None, "phone": None, "address": None,
                   "guardian": None, "preferences": None, "classrooms": [], "submissions": [], "doubts": [],
                   "stats": default_student_stats(), "badges": [], "lastActive": now, "streakLastUpdated": None,
                   "createdAt": now, "updatedAt": now}
        student["_id"] = db.students.insert_one(student).inserted_id
        students.append(student)

    # One classroom per teacher subject, each with a random set of students
    classrooms = []
    for teacher in teachers:
        for subject in teacher["specialization"]:
            members = rng.sample(students, rng.randint(2, len(students)))
            classroom = {
                "name": f"{subject} {members[0]['grade']}",
                "description": f"{subject} class taught by {teacher['name']}",
                "subject": subject,
                "grade": members[0]["grade"],
                "teacher": teacher["_id"],
                "inviteCode": generate_unique_code(db.classrooms),
                "students": [s["_id"] for s in members],
                "settings": {"allowStudentQuestions": True, "autoGrading": False, "publicLeaderboard": False},
                "isActive": True,
                "createdAt": now,
                "updatedAt": now
            }
            classroom["_id"] = db.classrooms.insert_one(classroom).inserted_id
            classrooms.append(classroom)
            db.teachers.update_one({"_id": teacher["_id"]}, {"$addToSet": {"classrooms": classroom["_id"]}})
            db.students.update_many({"_id": {"$in": classroom["students"]}},
                                    {"$addToSet": {"classrooms": classroom["_id"]}})

    # Assignments: one past due and one upcoming per classroom
    submission_count = 0
    assignment_count = 0
    for classroom in classrooms:
        for offset_days in (-7, 10):
            topic = rng.choice(topics[classroom["subject"]])
            assignment = {
                "title": f"{topic} {'Review' if offset_days < 0 else 'Homework'}",
                "description": f"Work through the exercises on {topic.lower()}.",
                "instructions": "",
                "subject": classroom["subject"],
                "grade": classroom["grade"],
                "type": rng.choice(["assignment", "homework", "quiz"]),
                "teacher": classroom["teacher"],
                "classroom": classroom["_id"],
                "dueDate": now + timedelta(days=offset_days),
                "totalPoints": 100,
                "difficulty": rng.choice(["easy", "medium", "hard"]),
                "questions": [],
                "timeLimit": None,
                "lateSubmissionAllowed": True,
                "attachments": [],
                "submissions": [],
                "doubts": [],
                "status": "active",
                "isActive": True,
                "createdAt": now + timedelta(days=min(offset_days, 0) - 3),
                "updatedAt": now
            }
            assignment["_id"] = db.assignments.insert_one(assignment).inserted_id
            assignment_count += 1

            # Past assignments are submitted and mostly graded
            if offset_days > 0:
                continue
            for student_id in classroom["students"]:
                graded = rng.random() < 0.8
                submission = {
                    "assignment": assignment["_id"],
                    "student": student_id,
                    "content": f"My answers for {assignment['title']}.",
                    "answers": [],
                    "attachments": [],
                    "submittedAt": assignment["dueDate"] - timedelta(days=rng.randint(0, 3)),
                    "score": rng.randint(55, 100) if graded else None,
                    "feedback": "Good work." if graded else None,
                    "status": "graded" if graded else "submitted",
                    "gradedAt": now if graded else None,
                    "gradedBy": classroom["teacher"] if graded else None
                }
                submission["_id"] = db.submissions.insert_one(submission).inserted_id
                submission_count += 1
                db.assignments.update_one({"_id": assignment["_id"]}, {"$push": {"submissions": submission["_id"]}})
                db.students.update_one({"_id": student_id}, {"$push": {"submissions": submission["_id"]}})

    for student in students:
        recompute_student_stats(db, student["_id"])

    return {
        "teachers": len(teachers),
        "students": len(students),
        "classrooms": len(classrooms),
        "assignments": assignment_count,
        "submissions": submission_count
    }


if __name__ == '__main__':
    load_dotenv()
    client = MongoClient(os.getenv('MONGO_URI', 'mongodb://localhost:27017'))
    database = client[os.getenv('MONGO_DB_NAME', 'classroom_portal')]

    from app import ensure_indexes
    counts = seed(database)
    ensure_indexes(database)

    # Print confirmation
    print("Data inserted successfully!")
    for name, count in counts.items():
        print(f"{name.capitalize()} collection: {count}")
    print(f"\nLogin credentials (password: {SEED_PASSWORD}):")
    for teacher in teachers_data:
        print(f"  Teacher: {teacher['email']}")
    for student in students_data:
        print(f"  Student: {student['email']}")
