"""Core data models for authentication, RBAC, audit trails, and the complaint lifecycle."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


COMPLAINT_CATEGORIES: tuple[str, ...] = (
	"academics",
	"administration",
	"facilities",
	"technical",
	"other",
)

COMPLAINT_STATUS_OPEN = "open"
COMPLAINT_STATUS_IN_PROGRESS = "in_progress"
COMPLAINT_STATUS_RESOLVED = "resolved"

COMPLAINT_STATUSES: tuple[str, ...] = (
	COMPLAINT_STATUS_OPEN,
	COMPLAINT_STATUS_IN_PROGRESS,
	COMPLAINT_STATUS_RESOLVED,
)

STATUS_LABELS: dict[str, str] = {
	COMPLAINT_STATUS_OPEN: "Open",
	COMPLAINT_STATUS_IN_PROGRESS: "In Progress",
	COMPLAINT_STATUS_RESOLVED: "Resolved",
}

ROLE_STUDENT = "Student"
ROLE_STAFF = "Staff"
ROLE_ADMIN = "Admin"

STAFF_ROLES: tuple[str, ...] = (ROLE_STAFF, ROLE_ADMIN)


def _in_clause(values: tuple[str, ...]) -> str:
	return ",".join(f"'{value}'" for value in values)


def _isoformat(value):
	return value.isoformat() if value else None


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)

	users = db.relationship("User", back_populates="role", lazy="dynamic")

	@staticmethod
	def get_or_create(name: str, description: str = ""):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description)
		db.session.add(role)
		db.session.commit()
		return role


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	role = db.relationship("Role", back_populates="users")
	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")
	complaints = db.relationship("Complaint", back_populates="student", lazy="dynamic")
	responses = db.relationship("ComplaintResponse", back_populates="responder", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def role_name(self) -> str:
		return self.role.name if self.role else ""

	@property
	def is_admin(self) -> bool:
		return self.role_name.lower() == ROLE_ADMIN.lower()

	@property
	def is_staff(self) -> bool:
		return self.role_name.lower() in {r.lower() for r in STAFF_ROLES}

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	def profile_payload(self) -> dict:
		return {"id": self.id, "full_name": self.full_name, "email": self.email}

	def account_payload(self) -> dict:
		payload = self.profile_payload()
		payload.update(
			{
				"role": self.role_name,
				"is_staff": self.is_staff,
				"created_at": _isoformat(self.created_at),
				"last_login_at": _isoformat(self.last_login_at),
			}
		)
		return payload


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class Complaint(db.Model):
	__tablename__ = "complaints"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	student_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	title = db.Column(db.String(255), nullable=False)
	description = db.Column(db.Text, nullable=False)
	category = db.Column(db.String(30), nullable=False, index=True)
	status = db.Column(db.String(20), nullable=False, default=COMPLAINT_STATUS_OPEN, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(
		db.DateTime,
		default=datetime.utcnow,
		onupdate=datetime.utcnow,
		nullable=False,
	)

	__table_args__ = (
		db.CheckConstraint(
			f"category IN ({_in_clause(COMPLAINT_CATEGORIES)})",
			name="ck_complaint_category_valid",
		),
		db.CheckConstraint(
			f"status IN ({_in_clause(COMPLAINT_STATUSES)})",
			name="ck_complaint_status_valid",
		),
		db.CheckConstraint("length(trim(title)) > 0", name="ck_complaint_title_present"),
		db.CheckConstraint("length(trim(description)) > 0", name="ck_complaint_description_present"),
		db.Index("ix_complaints_student_created", "student_id", "created_at"),
	)

	student = db.relationship("User", back_populates="complaints")
	responses = db.relationship(
		"ComplaintResponse",
		back_populates="complaint",
		order_by="ComplaintResponse.created_at",
	)
	status_history = db.relationship(
		"ComplaintStatusHistory",
		back_populates="complaint",
		order_by="ComplaintStatusHistory.changed_at",
	)

	@property
	def immutable_fields(self) -> set[str]:
		return {"id", "student_id", "category", "created_at"}

	def to_payload(self, include_student: bool = False, include_responses: bool = True) -> dict:
		payload = {
			"id": str(self.id),
			"student_id": self.student_id,
			"title": self.title,
			"description": self.description,
			"category": self.category,
			"status": self.status,
			"status_label": STATUS_LABELS.get(self.status, self.status),
			"created_at": _isoformat(self.created_at),
			"updated_at": _isoformat(self.updated_at),
		}
		if include_student:
			payload["student"] = self.student.profile_payload() if self.student else None
		if include_responses:
			payload["responses"] = [response.to_payload() for response in self.responses]
		return payload


class ComplaintResponse(db.Model):
	__tablename__ = "complaint_responses"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_id = db.Column(db.String(36), db.ForeignKey("complaints.id"), nullable=False, index=True)
	responder_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	message = db.Column(db.Text, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint("length(trim(message)) > 0", name="ck_complaint_response_message_present"),
	)

	complaint = db.relationship("Complaint", back_populates="responses")
	responder = db.relationship("User", back_populates="responses")

	def to_payload(self) -> dict:
		return {
			"id": str(self.id),
			"complaint_id": self.complaint_id,
			"responder_id": self.responder_id,
			"responder_name": self.responder.full_name if self.responder else None,
			"message": self.message,
			"created_at": _isoformat(self.created_at),
		}


class ComplaintStatusHistory(db.Model):
	__tablename__ = "complaint_status_history"

	id = db.Column(db.Integer, primary_key=True)
	complaint_id = db.Column(db.String(36), db.ForeignKey("complaints.id"), nullable=False, index=True)
	previous_status = db.Column(db.String(20), nullable=True)
	new_status = db.Column(db.String(20), nullable=False, index=True)
	changed_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	changed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			f"new_status IN ({_in_clause(COMPLAINT_STATUSES)})",
			name="ck_complaint_status_history_valid",
		),
	)

	complaint = db.relationship("Complaint", back_populates="status_history")
	actor = db.relationship("User")

	def to_payload(self) -> dict:
		return {
			"previous_status": self.previous_status,
			"new_status": self.new_status,
			"changed_by": self.changed_by,
			"changed_at": _isoformat(self.changed_at),
		}
