"""
Caller-facing outcomes of the submission and reporting services.

Every error carries the HTTP status and machine-readable code the request
layer answers with. Raw database errors never leave the services as one of
these; anything else is an infrastructure failure and propagates as-is.
"""


class SubmissionError(Exception):
    status_code = 400
    code = "submission_error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class NotFound(SubmissionError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class FormNotFound(NotFound):
    code = "form_not_found"

    def __init__(self, form_id):
        super().__init__("form", form_id)


class FormInactiveOrOutOfWindow(SubmissionError):
    status_code = 403
    code = "form_unavailable"

    def __init__(self, form_id):
        super().__init__(f"form {form_id} is not active or is outside its response window")
        self.form_id = form_id


class RoleNotPermitted(SubmissionError):
    status_code = 403
    code = "role_not_permitted"

    def __init__(self, form_id, role):
        super().__init__(f"role {role} may not answer form {form_id}")
        self.form_id = form_id
        self.role = role


class AlreadySubmitted(SubmissionError):
    status_code = 409
    code = "already_submitted"

    def __init__(self, form_id):
        super().__init__(f"form {form_id} was already answered and cannot be edited")
        self.form_id = form_id


class AlreadyFinalized(SubmissionError):
    status_code = 409
    code = "already_finalized"

    def __init__(self, group_id):
        super().__init__(f"response group {group_id} is finalized")
        self.group_id = group_id


class MissingRequiredAnswers(SubmissionError):
    status_code = 422
    code = "missing_required_answers"

    def __init__(self, question_ids, labels=None):
        self.question_ids = list(question_ids)
        self.labels = list(labels or [])
        detail = ", ".join(self.labels) if self.labels else ", ".join(str(q) for q in self.question_ids)
        super().__init__(f"required questions not answered: {detail}")

    def to_dict(self):
        data = super().to_dict()
        data["question_ids"] = self.question_ids
        return data


class InvalidAnswerShape(SubmissionError):
    code = "invalid_answer"
