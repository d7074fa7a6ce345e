"""
Course store.

``enrolled_students`` is the single source of truth for who is enrolled; the
course orders in the ledger are an audit trail of how they got there.
"""
import logging
from typing import Any, Dict, List

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, parse_id, utcnow
from errors import AlreadyEnrolled, Conflict, CourseFull, DuplicateEntry, NotFound, ValidationError
from schemas import Course, validate_as

logger = logging.getLogger(__name__)

MANAGED_FIELDS = ("_id", "enrolled_students", "created_at", "updated_at")


def list_courses(db: Database) -> List[dict]:
    return list(db["course"].find().sort("start_date", 1))


def get_course(db: Database, course_id: Any) -> dict:
    course = db["course"].find_one({"_id": parse_id(course_id, "Course")})
    if not course:
        raise NotFound("Course not found")
    return course


def create_course(db: Database, payload: Dict[str, Any]) -> dict:
    course = validate_as(Course, payload)
    if db["course"].find_one({"name": course.name}):
        raise DuplicateEntry("A course with this name already exists")
    doc = course.model_dump()
    doc["enrolled_students"] = []
    try:
        inserted_id = create_document(db, "course", doc)
    except DuplicateKeyError:
        raise DuplicateEntry("A course with this name already exists")
    logger.info("Created course %s (%s)", course.name, inserted_id)
    return db["course"].find_one({"_id": inserted_id})


def update_course(db: Database, course_id: Any, patch: Dict[str, Any]) -> dict:
    existing = get_course(db, course_id)
    merged = {k: v for k, v in existing.items() if k not in MANAGED_FIELDS}
    merged.update({k: v for k, v in patch.items() if k not in MANAGED_FIELDS})
    course = validate_as(Course, merged)
    if course.max_students < len(existing.get("enrolled_students", [])):
        raise ValidationError("max_students cannot be lower than the number of enrolled students")
    if course.name != existing["name"] and db["course"].find_one({"name": course.name}):
        raise DuplicateEntry("A course with this name already exists")
    update = course.model_dump()
    update["updated_at"] = utcnow()
    try:
        updated = db["course"].find_one_and_update(
            {
                "_id": existing["_id"],
                f"enrolled_students.{course.max_students}": {"$exists": False},
            },
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise DuplicateEntry("A course with this name already exists")
    if updated is None:
        # NotFound if the course was deleted, otherwise enrollments landed after the read
        get_course(db, existing["_id"])
        raise ValidationError("max_students cannot be lower than the number of enrolled students")
    return updated


def delete_course(db: Database, course_id: Any) -> None:
    course = get_course(db, course_id)
    if course.get("enrolled_students"):
        raise Conflict("Cannot delete course with enrolled students")
    db["course"].delete_one({"_id": course["_id"]})


def check_can_enroll(course: dict, user_id: ObjectId) -> None:
    enrolled = course.get("enrolled_students", [])
    if len(enrolled) >= course["max_students"]:
        raise CourseFull("Course is full")
    if user_id in enrolled:
        raise AlreadyEnrolled("You are already enrolled in this course")


def enroll(db: Database, course_id: Any, user_id: ObjectId) -> dict:
    course = get_course(db, course_id)
    check_can_enroll(course, user_id)

    max_students = course["max_students"]
    # the positional guard holds only while the array is shorter than max_students
    updated = db["course"].find_one_and_update(
        {
            "_id": course["_id"],
            "max_students": max_students,
            "enrolled_students": {"$ne": user_id},
            f"enrolled_students.{max_students - 1}": {"$exists": False},
        },
        {"$addToSet": {"enrolled_students": user_id}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # lost a race; report what the course looks like now
        check_can_enroll(get_course(db, course["_id"]), user_id)
        raise CourseFull("Course is full")
    logger.info("Enrolled user %s in course %s", user_id, course["_id"])
    return updated


def unenroll(db: Database, course_id: ObjectId, user_id: ObjectId) -> None:
    db["course"].update_one(
        {"_id": course_id},
        {"$pull": {"enrolled_students": user_id}, "$set": {"updated_at": utcnow()}},
    )


def enrolled_courses(db: Database, user_id: ObjectId) -> List[dict]:
    return list(db["course"].find({"enrolled_students": user_id}).sort("start_date", 1))
