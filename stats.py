import logging

from helpers import round_half_up, utc_now

logger = logging.getLogger(__name__)

ACTIVITY_LIMIT = 50

ACTIVITY_TYPES = {
    'assignment_created',
    'assignment_graded',
    'material_uploaded',
    'student_joined',
    'classroom_created',
    'doubt_answered',
    'quiz_generated'
}

BADGE_DESCRIPTIONS = {
    'consistent': 'Maintained a study streak for multiple days',
    'achiever': 'Consistently scored above 90% in assignments',
    'creator': 'Actively participated in creative projects',
    'helper': 'Helped fellow students with their doubts',
    'early_bird': 'Consistently submitted assignments before deadline',
    'perfectionist': 'Achieved perfect scores in multiple assignments',
    'dedicated': 'Showed exceptional dedication to studies'
}


# ----------- Student statistics ------------

def default_student_stats():
    return {
        "totalAssignments": 0,
        "completedAssignments": 0,
        "pendingAssignments": 0,
        "averageScore": 0,
        "streak": 0,
        "longestStreak": 0,
        "rank": None,
        "totalPoints": 0,
        "level": 1
    }


def default_teacher_stats():
    return {
        "totalStudents": 0,
        "totalClassrooms": 0,
        "totalAssignments": 0,
        "totalMaterials": 0
    }


def submission_percentage(score, total_points):
    if score is None or not total_points or total_points <= 0:
        return None
    return round_half_up(score / total_points * 100)


def letter_grade(percentage):
    # Get grade
    if percentage is None:
        return None
    elif percentage >= 90:
        return "A"
    elif percentage >= 80:
        return "B"
    elif percentage >= 70:
        return "C"
    elif percentage >= 60:
        return "D"
    else:
        return "F"


def derive_badges(average_score, completed_assignments, streak):
    badges = []
    if average_score >= 90:
        badges.append('achiever')
    if completed_assignments >= 5:
        badges.append('dedicated')
    if streak >= 7:
        badges.append('consistent')
    return badges


def compute_rank(db, student_id, average_score, total_points):
    """1-based position of the student after sorting everyone by (averageScore, totalPoints) desc."""
    ranking = []
    for other in db.students.find({}, {"stats": 1}):
        if other["_id"] == student_id:
            ranking.append((student_id, average_score, total_points))
            continue
        other_stats = other.get("stats") or {}
        ranking.append((other["_id"], other_stats.get("averageScore") or 0, other_stats.get("totalPoints") or 0))

    ranking.sort(key=lambda entry: (-entry[1], -entry[2]))
    for position, entry in enumerate(ranking, start=1):
        if entry[0] == student_id:
            return position
    return None


def compute_student_stats(db, student):
    submissions = list(db.submissions.find({"student": student["_id"]}))
    assignment_ids = list({s["assignment"] for s in submissions})
    total_points_by_assignment = {
        a["_id"]: a.get("totalPoints") or 0
        for a in db.assignments.find({"_id": {"$in": assignment_ids}}, {"totalPoints": 1})
    }

    total_assignments = len(submissions)
    completed = sum(1 for s in submissions if s.get("status") in ("graded", "submitted"))

    percentages = []
    total_points = 0
    for submission in submissions:
        if submission.get("status") != "graded" or submission.get("score") is None:
            continue
        assignment_points = total_points_by_assignment.get(submission["assignment"], 0)
        if assignment_points <= 0:
            continue
        percentages.append(submission["score"] / assignment_points * 100)
        total_points += submission["score"]

    average_score = round_half_up(sum(percentages) / len(percentages)) if percentages else 0
    streak = (student.get("stats") or {}).get("streak") or 0

    return {
        "totalAssignments": total_assignments,
        "completedAssignments": completed,
        "pendingAssignments": max(0, total_assignments - completed),
        "averageScore": average_score,
        "totalPoints": total_points,
        "rank": compute_rank(db, student["_id"], average_score, total_points),
        "badges": derive_badges(average_score, completed, streak)
    }


def recompute_student_stats(db, student_id):
    """Rebuild the cached stats and badges of a student from their submissions.

    Returns the updated student document or None when the student does not exist.
    Badges are overwritten, never merged.
    """
    student = db.students.find_one({"_id": student_id})
    if not student:
        return None

    computed = compute_student_stats(db, student)
    badges = computed.pop("badges")
    update = {f"stats.{key}": value for key, value in computed.items()}
    update["badges"] = badges
    db.students.update_one({"_id": student_id}, {"$set": update})
    return db.students.find_one({"_id": student_id})


def apply_streak(stats, streak_last_updated, now=None):
    """Return (streak, longest_streak) after a visit at ``now``."""
    now = now or utc_now()
    streak = stats.get("streak") or 0
    longest = stats.get("longestStreak") or 0
    if streak_last_updated is None:
        return max(streak, 1), max(longest, streak, 1)

    days = (now - streak_last_updated).days
    if days == 1:
        streak += 1
        longest = max(longest, streak)
    elif days > 1:
        streak = 1
    return streak, longest


def update_streak(db, student_id, now=None):
    student = db.students.find_one({"_id": student_id})
    if not student:
        return None
    now = now or utc_now()
    stats = student.get("stats") or {}
    streak, longest = apply_streak(stats, student.get("streakLastUpdated"), now)
    db.students.update_one({"_id": student_id}, {"$set": {
        "stats.streak": streak,
        "stats.longestStreak": longest,
        "badges": derive_badges(stats.get("averageScore") or 0, stats.get("completedAssignments") or 0, streak),
        "streakLastUpdated": now,
        "lastActive": now
    }})
    return db.students.find_one({"_id": student_id})


def completion_percentage(stats):
    total = (stats or {}).get("totalAssignments") or 0
    if total == 0:
        return 0
    return round_half_up(((stats or {}).get("completedAssignments") or 0) / total * 100)


# ----------- Assignment and classroom statistics ------------

def assignment_submission_counts(assignment, roster_size, now=None):
    """Counts derived per request, never stored."""
    now = now or utc_now()
    submitted = len(assignment.get("submissions") or [])
    pending = max(0, roster_size - submitted)
    due_date = assignment.get("dueDate")
    is_overdue = due_date is not None and now > due_date
    return {
        "totalStudents": roster_size,
        "submittedCount": submitted,
        "pendingCount": pending,
        "overdueCount": pending if is_overdue else 0,
        "isOverdue": is_overdue
    }


def is_late(submission, assignment):
    due_date = (assignment or {}).get("dueDate")
    submitted_at = submission.get("submittedAt")
    return due_date is not None and submitted_at is not None and submitted_at > due_date


def effective_submission_status(submission, assignment):
    status = submission.get("status") or "submitted"
    if status == "submitted" and is_late(submission, assignment):
        return "late"
    return status


def classroom_stats(students, assignment_count, material_count):
    """Classroom summary computed from the roster's cached student stats."""
    stats = {
        "totalStudents": len(students),
        "totalAssignments": assignment_count,
        "totalMaterials": material_count,
        "averageScore": 0,
        "completionRate": 0
    }
    if not students or assignment_count == 0:
        return stats

    scores = [s["stats"]["averageScore"] for s in students if (s.get("stats") or {}).get("averageScore")]
    if scores:
        stats["averageScore"] = round_half_up(sum(scores) / len(scores))

    completed = [s["stats"]["completedAssignments"] for s in students if (s.get("stats") or {}).get("completedAssignments")]
    if completed:
        total_possible = assignment_count * len(students)
        stats["completionRate"] = round_half_up(sum(completed) / total_possible * 100)
    return stats


def teacher_performance(db, teacher_id):
    classrooms = list(db.classrooms.find({"teacher": teacher_id}))
    assignments = list(db.assignments.find({"teacher": teacher_id}, {"classroom": 1, "submissions": 1}))
    materials = list(db.materials.find({"teacher": teacher_id}, {"downloadCount": 1}))

    roster_sizes = {c["_id"]: len(c.get("students") or []) for c in classrooms}
    total_students = sum(roster_sizes.values())

    performance = {
        "totalClassrooms": len(classrooms),
        "totalStudents": total_students,
        "totalAssignments": len(assignments),
        "totalMaterials": len(materials),
        "averageClassSize": round_half_up(total_students / len(classrooms)) if classrooms else 0,
        "assignmentCompletionRate": 0,
        "averageStudentScore": 0,
        "materialDownloads": sum(m.get("downloadCount") or 0 for m in materials)
    }

    possible = sum(roster_sizes.get(a.get("classroom"), 0) for a in assignments)
    submitted = sum(len(a.get("submissions") or []) for a in assignments)
    if possible > 0:
        performance["assignmentCompletionRate"] = round_half_up(submitted / possible * 100)

    student_ids = [sid for c in classrooms for sid in (c.get("students") or [])]
    scores = [
        s["stats"]["averageScore"]
        for s in db.students.find({"_id": {"$in": student_ids}}, {"stats": 1})
        if (s.get("stats") or {}).get("averageScore")
    ]
    if scores:
        performance["averageStudentScore"] = round_half_up(sum(scores) / len(scores))
    return performance


def dashboard_stats(db, teacher_id):
    classrooms = list(db.classrooms.find({"teacher": teacher_id}, {"students": 1}))
    return {
        "activeClassrooms": len(classrooms),
        "totalStudents": sum(len(c.get("students") or []) for c in classrooms),
        "assignmentsCreated": db.assignments.count_documents({"teacher": teacher_id}),
        "materialsUploaded": db.materials.count_documents({"teacher": teacher_id})
    }


# ----------- Recent activity ------------

def create_activity(db, teacher_id, activity_type, title, description,
                    related_id=None, related_model=None, metadata=None):
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity type: {activity_type}")

    activity = {
        "teacherId": teacher_id,
        "type": activity_type,
        "title": title,
        "description": description,
        "relatedId": related_id,
        "relatedModel": related_model,
        "metadata": metadata or {},
        "createdAt": utc_now()
    }
    activity["_id"] = db.recent_activities.insert_one(activity).inserted_id

    # Keep only the latest entries per teacher
    stale = db.recent_activities.find({"teacherId": teacher_id}, {"_id": 1}) \
        .sort([("createdAt", -1), ("_id", -1)]).skip(ACTIVITY_LIMIT)
    stale_ids = [a["_id"] for a in stale]
    if stale_ids:
        db.recent_activities.delete_many({"_id": {"$in": stale_ids}})
    return activity


def record_activity(db, teacher_id, activity_type, title, description, **kwargs):
    """Best-effort wrapper: a failed activity write never aborts the caller."""
    try:
        return create_activity(db, teacher_id, activity_type, title, description, **kwargs)
    except Exception:
        logger.warning("Failed to create recent activity %s", activity_type, exc_info=True)
        return None
