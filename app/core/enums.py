from enum import Enum


class Collection(str, Enum):
    CLASSES = "classes"
    PUPILS = "pupils"
    ALUMNI = "alumni"
    SETTINGS = "settings"
    PROMOTIONS = "promotions"
    PROMOTION_SNAPSHOTS = "promotion_snapshots"
    RESULT_DRAFTS = "result_drafts"
    RESULT_SUBMISSIONS = "result_submissions"
    RESULTS = "results"
    RESULT_LOCKS = "result_locks"
    RESULT_APPROVAL_SNAPSHOTS = "result_approval_snapshots"


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PUPIL = "pupil"


class PromotionStatus(str, Enum):
    pending = "pending"
    rejected = "rejected"
    completed = "completed"


class SnapshotStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class DraftStatus(str, Enum):
    draft = "draft"
    absent = "absent"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class SubmissionStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


ALUMNI_DESTINATION = "alumni"
