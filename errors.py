# errors.py
# Error taxonomy for the attempt engine. Every error knows its HTTP status
# and renders to the {"ok": False, "error": ...} shape the blueprint returns.

from typing import Any, Dict, Optional


class QuizEngineError(Exception):
    code = "quiz_error"
    status = 400
    message = "Request could not be completed."

    def __init__(self, message: Optional[str] = None, hint: Optional[str] = None, **extra: Any):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.hint = hint
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.hint:
            body["hint"] = self.hint
        body.update(self.extra)
        return body


# ---- admission --------------------------------------------------------------
class QuizNotFound(QuizEngineError):
    code, status, message = "quiz_not_found", 404, "Quiz not found."


class QuizNotPublished(QuizEngineError):
    code, status, message = "quiz_not_published", 403, "This quiz is not yet published."


class QuizNotScheduled(QuizEngineError):
    code, status = "quiz_not_scheduled", 425
    message = "This quiz has not been scheduled yet. Please check back later or contact your educator."


class QuizNotStarted(QuizEngineError):
    code, status, message = "quiz_not_started", 425, "Quiz not yet started."


class QuizEnded(QuizEngineError):
    code, status, message = "quiz_ended", 410, "This quiz has already ended and is no longer available."


class EnrollmentWindowClosed(QuizEngineError):
    code, status, message = "enrollment_window_closed", 400, "Cannot enroll students in an expired quiz."


class QuizHasNoQuestions(QuizEngineError):
    code, status, message = "quiz_has_no_questions", 500, "Quiz has no questions available."


# ---- state conflicts --------------------------------------------------------
class AlreadyCompleted(QuizEngineError):
    code, status = "already_completed", 403
    message = "You have already completed this quiz. Each quiz can only be taken once."


class QuizTimeExpired(QuizEngineError):
    code, status = "quiz_time_expired", 403
    message = "Your quiz time has expired. The quiz has been automatically submitted."


class AttemptNotActive(QuizEngineError):
    code, status, message = "attempt_not_active", 409, "This attempt is no longer in progress. Refresh to continue."


class AlreadyEnrolled(QuizEngineError):
    code, status, message = "already_enrolled", 409, "Student is already enrolled in this quiz."


class NoEligibleStudents(QuizEngineError):
    code, status, message = "no_eligible_students", 400, "No eligible students for reassignment."


# ---- authorization ----------------------------------------------------------
class Unauthorized(QuizEngineError):
    code, status, message = "unauthorized", 401, "Unauthorized."


class NoActiveEnrollment(QuizEngineError):
    code, status = "no_active_enrollment", 403
    message = "You have completed all available attempts for this quiz."


class InvalidAttempt(QuizEngineError):
    code, status, message = "invalid_attempt", 404, "Invalid attempt."


class StudentNotLinked(QuizEngineError):
    code, status = "student_not_linked", 403
    message = "Student is not associated with your educator account. Please add them as your student first."


class BadRequest(QuizEngineError):
    code, status, message = "bad_request", 400, "Bad request."
