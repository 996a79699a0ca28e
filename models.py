
import enum
import json
import sqlite3
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint, event
from sqlalchemy.engine import Engine
from sqlalchemy.types import TypeDecorator, TEXT


db = SQLAlchemy()

def utcnow():
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _as_naive_utc(dt):
    """Return dt as naive UTC (or None). Handles aware/naive inputs safely."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

class JSONText(TypeDecorator):
    impl = TEXT
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return json.dumps(value, ensure_ascii=False)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return json.loads(value)

# pysqlite emits its own BEGIN lazily, which breaks SAVEPOINT; take over
# transaction start and turn on FK enforcement for ON DELETE CASCADE.
# Transactions open with BEGIN IMMEDIATE, so concurrent writers queue on the
# busy timeout rather than fail a shared-to-write lock upgrade.
@event.listens_for(Engine, "connect")
def _sqlite_on_connect(dbapi_connection, connection_record):
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()

@event.listens_for(Engine, "begin")
def _sqlite_on_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Role(enum.Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    COORDINATOR = "coordinator"
    ADMIN = "admin"

class Capability(enum.Enum):
    RESPOND = "respond"
    VIEW_CLASS_REPORTS = "view_class_reports"
    VIEW_ALL_REPORTS = "view_all_reports"

CAPABILITIES = {
    Role.STUDENT: frozenset({Capability.RESPOND}),
    Role.INSTRUCTOR: frozenset({Capability.RESPOND, Capability.VIEW_CLASS_REPORTS}),
    Role.COORDINATOR: frozenset({Capability.RESPOND, Capability.VIEW_CLASS_REPORTS,
                                 Capability.VIEW_ALL_REPORTS}),
    Role.ADMIN: frozenset({Capability.VIEW_CLASS_REPORTS, Capability.VIEW_ALL_REPORTS}),
}

def parse_role(value):
    """Accept a Role, its value ("student") or its name ("STUDENT")."""
    if isinstance(value, Role):
        return value
    return Role(str(value).strip().lower())

def role_can(role, capability):
    return capability in CAPABILITIES.get(parse_role(role), frozenset())

class QuestionType(enum.Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    FREE_TEXT = "free_text"

    @property
    def is_choice(self):
        return self is not QuestionType.FREE_TEXT

class AuditOutcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


classroom_instructors = db.Table(
    "classroom_instructors",
    db.Column("classroom_id", db.Integer, db.ForeignKey("classrooms.id", ondelete="CASCADE"), primary_key=True),
    db.Column("respondent_id", db.Integer, db.ForeignKey("respondents.id", ondelete="CASCADE"), primary_key=True),
)

answer_selections = db.Table(
    "answer_selections",
    db.Column("answer_id", db.Integer, db.ForeignKey("answers.id", ondelete="CASCADE"), primary_key=True),
    db.Column("alternative_id", db.Integer, db.ForeignKey("alternatives.id", ondelete="CASCADE"), primary_key=True),
)

class Respondent(db.Model):
    __tablename__ = "respondents"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    role = db.Column(db.Enum(Role, native_enum=False, length=32), nullable=False, default=Role.STUDENT)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

class Classroom(db.Model):
    __tablename__ = "classrooms"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    year = db.Column(db.Integer, nullable=True)
    semester = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    instructors = db.relationship('Respondent', secondary=classroom_instructors,
                                  backref=db.backref('taught_classrooms', lazy="select"))

class Form(db.Model):
    __tablename__ = "forms"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_anonymous = db.Column(db.Boolean, nullable=False, default=False)
    allow_edit = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    opens_at = db.Column(db.DateTime, nullable=True)
    closes_at = db.Column(db.DateTime, nullable=True)
    # Role names allowed to answer; empty list means anyone.
    target_roles = db.Column(JSONText, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def is_available(self, now=None):
        """Active and inside [opens_at, closes_at]; open bounds are unlimited."""
        if not self.is_active:
            return False
        now = _as_naive_utc(now) or utcnow()
        opens_at = _as_naive_utc(self.opens_at)
        closes_at = _as_naive_utc(self.closes_at)
        if opens_at and now < opens_at:
            return False
        if closes_at and now > closes_at:
            return False
        return True

    @property
    def is_editable(self):
        # anonymous answers can never be reopened, whatever allow_edit says
        return bool(self.allow_edit) and not self.is_anonymous

    def accepts_role(self, role):
        if not self.target_roles:
            return True
        return parse_role(role).name in {parse_role(r).name for r in self.target_roles}

class Question(db.Model):
    __tablename__ = "questions"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey('forms.id', ondelete="CASCADE"), index=True, nullable=False)
    text = db.Column(db.Text, nullable=False)
    kind = db.Column(db.Enum(QuestionType, native_enum=False, length=32), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)

    form = db.relationship('Form', backref=db.backref('questions', cascade="all,delete-orphan",
                                                      order_by='Question.position'))

    __table_args__ = (
        UniqueConstraint('form_id', 'position', name='uq_question_form_position'),
    )

class Alternative(db.Model):
    __tablename__ = "alternatives"
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    text = db.Column(db.Text, nullable=False)
    position = db.Column(db.Integer, nullable=False)
    weight = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=True)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)

    question = db.relationship('Question', backref=db.backref('alternatives', cascade="all,delete-orphan",
                                                              order_by='Alternative.position'))

    __table_args__ = (
        UniqueConstraint('question_id', 'position', name='uq_alternative_question_position'),
    )

class SubmissionLedger(db.Model):
    """Who answered which form, and when. Never read by report code."""
    __tablename__ = "submission_ledgers"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey('forms.id', ondelete="CASCADE"), index=True, nullable=False)
    respondent_id = db.Column(db.Integer, db.ForeignKey('respondents.id', ondelete="CASCADE"), index=True, nullable=False)
    classroom_id = db.Column(db.Integer, db.ForeignKey('classrooms.id', ondelete="SET NULL"), index=True, nullable=True)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    finished_at = db.Column(db.DateTime, nullable=True)
    completed = db.Column(db.Boolean, nullable=False, default=False)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    form = db.relationship('Form')
    respondent = db.relationship('Respondent')

    # one ledger per (form, respondent) at the DB layer
    __table_args__ = (
        UniqueConstraint('form_id', 'respondent_id', name='uq_ledger_form_respondent'),
    )

    @property
    def is_finalized(self):
        return bool(self.completed) and self.finished_at is not None

    @property
    def duration_minutes(self):
        if self.started_at is None:
            return None
        end = self.finished_at or utcnow()
        return int((end - self.started_at).total_seconds() // 60)

class ResponseGroup(db.Model):
    """
    Pseudonymous holder of a respondent's answers.

    Report code works with groups and their answers only. The link back to the
    ledger (and so to the respondent) is reached through audit_respondent_id(),
    which is reserved for audit and for identified (non-anonymous) forms.
    """
    __tablename__ = "response_groups"
    id = db.Column(db.Integer, primary_key=True)
    ledger_id = db.Column(db.Integer, db.ForeignKey('submission_ledgers.id', ondelete="CASCADE"),
                          unique=True, nullable=False)
    classroom_id = db.Column(db.Integer, db.ForeignKey('classrooms.id', ondelete="SET NULL"), index=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    finalized_at = db.Column(db.DateTime, nullable=True)

    ledger = db.relationship('SubmissionLedger',
                             backref=db.backref('response_group', uselist=False))
    answers = db.relationship('Answer', back_populates='response_group',
                              cascade="all,delete-orphan", order_by='Answer.question_id')

    @property
    def is_finalized(self):
        return self.finalized_at is not None

    @property
    def form(self):
        return self.ledger.form if self.ledger is not None else None

    def audit_respondent_id(self):
        """Respondent behind this group. Audit and identified reports only."""
        return self.ledger.respondent_id if self.ledger is not None else None

    def can_edit(self, now=None):
        form = self.form
        if form is None:
            return False
        return form.is_editable and form.is_available(now) and self.is_finalized

class Answer(db.Model):
    __tablename__ = "answers"
    id = db.Column(db.Integer, primary_key=True)
    response_group_id = db.Column(db.Integer, db.ForeignKey('response_groups.id', ondelete="CASCADE"),
                                  index=True, nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    body = db.Column(db.Text, nullable=True)
    answered_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    edited_at = db.Column(db.DateTime, nullable=True)

    response_group = db.relationship('ResponseGroup', back_populates='answers')
    question = db.relationship('Question')
    selections = db.relationship('Alternative', secondary=answer_selections,
                                 order_by='Alternative.position')

    __table_args__ = (
        UniqueConstraint('response_group_id', 'question_id', name='uq_answer_group_question'),
    )

    @property
    def is_blank(self):
        if self.question is not None and self.question.kind.is_choice:
            return not self.selections
        return not (self.body or "").strip()

class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    id = db.Column(db.Integer, primary_key=True)
    # plain column, not a FK: denied or failed calls may name unknown respondents
    respondent_id = db.Column(db.Integer, index=True, nullable=True)
    action = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    outcome = db.Column(db.Enum(AuditOutcome, native_enum=False, length=16), nullable=False)
    error_detail = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index('idx_audit_action_created', 'action', 'created_at'),
    )
