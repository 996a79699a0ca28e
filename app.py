import os, secrets, argparse, functools, logging
from flask import Flask, Blueprint, request, jsonify, abort, current_app, g
from werkzeug.exceptions import HTTPException
from itsdangerous import URLSafeSerializer, BadData

from models import db, Capability, Respondent, role_can
from errors import SubmissionError, InvalidAnswerShape
from submissions import SubmissionService
from scoring import ScoreAggregator
from audit import ClientInfo, DatabaseAuditSink

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("FORMS_DB", "forms.db"))
DB_URI  = os.environ.get("DATABASE_URL") or f"sqlite:///{DB_PATH}"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

TOKEN_SALT = "respondent-token"

api = Blueprint("api", __name__, url_prefix="/api")

def create_app(db_uri=DB_URI, secret=None, audit_sink=None):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = Flask(__name__)
    app.config["SECRET_KEY"] = secret or APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    db.init_app(app)
    app.extensions["submission_service"] = SubmissionService(audit=audit_sink or DatabaseAuditSink())
    app.extensions["score_aggregator"] = ScoreAggregator()
    app.register_blueprint(api)
    with app.app_context():
        db.create_all()
    return app

def _submissions():
    return current_app.extensions["submission_service"]

def _scores():
    return current_app.extensions["score_aggregator"]

# --------------------------------------------------------------------
# Auth helpers (bearer token signed with the app secret)
# --------------------------------------------------------------------
def _signer(secret=None):
    return URLSafeSerializer(secret or current_app.config["SECRET_KEY"], salt=TOKEN_SALT)

def issue_token(respondent, secret=None):
    return _signer(secret).dumps({"id": respondent.id, "role": respondent.role.value})

def current_respondent():
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    try:
        payload = _signer().loads(header[len("Bearer "):].strip())
    except BadData:
        return None
    if not isinstance(payload, dict) or "id" not in payload:
        return None
    respondent = db.session.get(Respondent, payload["id"])
    # a token minted before a role change is no longer honoured
    if respondent is None or respondent.role.value != payload.get("role"):
        return None
    return respondent

def require_capability(capability):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            respondent = current_respondent()
            if respondent is None:
                abort(401, description="Missing or invalid token.")
            if not role_can(respondent.role, capability):
                abort(403, description=f"{respondent.role.value} may not {capability.value}.")
            g.respondent = respondent
            return fn(*args, **kwargs)
        return wrapper
    return deco

def client_info():
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() or request.remote_addr
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("User-Agent"))

def _owned_group(group_id):
    group = _submissions().get_group(group_id)
    if group.audit_respondent_id() != g.respondent.id:
        abort(403, description="Not your submission.")
    return group

# --------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------
@api.errorhandler(SubmissionError)
def handle_submission_error(exc):
    return jsonify(exc.to_dict()), exc.status_code

@api.errorhandler(HTTPException)
def handle_http_error(exc):
    code = (exc.name or "error").lower().replace(" ", "_")
    return jsonify({"error": code, "message": exc.description}), exc.code

# --------------------------------------------------------------------
# Payloads
# --------------------------------------------------------------------
def _iso(dt):
    return dt.isoformat() + "Z" if dt else None

def _answer_payload(answer):
    return {
        "question_id": answer.question_id,
        "text": answer.body,
        "alternative_ids": [a.id for a in answer.selections],
        "answered_at": _iso(answer.answered_at),
        "edited_at": _iso(answer.edited_at),
    }

def _group_payload(group):
    return {
        "group_id": group.id,
        "form_id": group.form.id,
        "classroom_id": group.classroom_id,
        "finalized": group.is_finalized,
        "finalized_at": _iso(group.finalized_at),
        "can_edit": group.can_edit(),
        "answers": [_answer_payload(a) for a in group.answers],
    }

def _optional_int(data, key):
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidAnswerShape(f"{key} must be an integer")

# --------------------------------------------------------------------
# Submissions
# --------------------------------------------------------------------
@api.route("/forms/<int:form_id>/submissions", methods=["POST"])
@require_capability(Capability.RESPOND)
def submissions_start(form_id):
    data = request.get_json(silent=True) or {}
    group = _submissions().start_submission(
        form_id, g.respondent.id, g.respondent.role,
        classroom_id=_optional_int(data, "classroom_id"),
        client=client_info(),
    )
    return jsonify(_group_payload(group))

@api.route("/submissions/<int:group_id>", methods=["GET"])
@require_capability(Capability.RESPOND)
def submissions_show(group_id):
    return jsonify(_group_payload(_owned_group(group_id)))

@api.route("/submissions/<int:group_id>/answers/<int:question_id>", methods=["PUT"])
@require_capability(Capability.RESPOND)
def submissions_save_answer(group_id, question_id):
    _owned_group(group_id)
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidAnswerShape("expected a JSON object with 'text' or 'alternative_ids'")
    answer = _submissions().save_answer(
        group_id, question_id,
        text=data.get("text"),
        alternative_ids=data.get("alternative_ids"),
        client=client_info(),
    )
    return jsonify(_answer_payload(answer))

@api.route("/submissions/<int:group_id>/finalize", methods=["POST"])
@require_capability(Capability.RESPOND)
def submissions_finalize(group_id):
    _owned_group(group_id)
    group = _submissions().finalize(group_id, client=client_info())
    return jsonify(_group_payload(group))

@api.route("/submissions/<int:group_id>", methods=["DELETE"])
@require_capability(Capability.RESPOND)
def submissions_cancel(group_id):
    _owned_group(group_id)
    _submissions().cancel(group_id, client=client_info())
    return jsonify({"ok": True})

@api.route("/me/submissions", methods=["GET"])
@require_capability(Capability.RESPOND)
def submissions_history():
    rows = []
    for form, answers in _submissions().submission_history(g.respondent.id):
        rows.append({
            "form_id": form.id,
            "title": form.title,
            "answers": [_answer_payload(a) for a in answers],
        })
    return jsonify({"submissions": rows})

# --------------------------------------------------------------------
# Reports
# --------------------------------------------------------------------
@api.route("/forms/<int:form_id>/report", methods=["GET"])
@require_capability(Capability.VIEW_ALL_REPORTS)
def forms_report(form_id):
    classroom_id = request.args.get("classroom_id", type=int)
    return jsonify(_scores().aggregate_form(form_id, classroom_id).to_dict())

@api.route("/forms/<int:form_id>/reports/mine", methods=["GET"])
@require_capability(Capability.VIEW_CLASS_REPORTS)
def forms_reports_mine(form_id):
    reports = _scores().aggregate_by_instructor(g.respondent.id, form_id)
    return jsonify({"reports": [r.to_dict() for r in reports]})

@api.route("/forms/<int:form_id>/stats", methods=["GET"])
@require_capability(Capability.VIEW_CLASS_REPORTS)
def forms_stats(form_id):
    return jsonify(_scores().basic_stats(form_id))

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    args = parser.parse_args()
    create_app().run(host=args.host, port=args.port)

if __name__ == "__main__":
    main()
