"""Authentication blueprint: student registration and session login."""
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from sqlalchemy.exc import IntegrityError
from wtforms import BooleanField, PasswordField, StringField
from wtforms.validators import DataRequired, Email, EqualTo, Length, ValidationError

from extensions import db
from models import ROLE_STUDENT, AuditLog, Role, User
from utils.security import password_meets_policy, reset_attempts, track_attempt

auth_bp = Blueprint("auth", __name__)

LOGIN_ATTEMPT_LIMIT = 10


class RegistrationForm(FlaskForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])
    confirm_password = PasswordField(
        "Confirm Password", validators=[DataRequired(), EqualTo("password", message="Passwords must match.")]
    )

    def validate_email(self, field):
        if User.query.filter_by(email=field.data.lower().strip()).first():
            raise ValidationError("An account with this email already exists.")


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember me")


def form_error_response(form: FlaskForm, message: str = "Invalid input"):
    return jsonify({"error": message, "fields": form.errors}), 400


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/register", methods=["POST"])
def register():
    if current_user.is_authenticated:
        return jsonify({"error": "Already signed in"}), 400

    form = RegistrationForm()
    if not form.validate_on_submit():
        return form_error_response(form)

    password_ok, reason = password_meets_policy(form.password.data)
    if not password_ok:
        return jsonify({"error": reason, "fields": {"password": [reason]}}), 400

    try:
        role = Role.get_or_create(ROLE_STUDENT)
        user = User(
            full_name=form.full_name.data.strip(),
            email=form.email.data.lower().strip(),
            role=role,
            is_active=True,
        )
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.flush()
        log_action("REGISTER", user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Registration rejected by database constraints")
        return jsonify({"error": "Unable to register with the provided details. Please try again."}), 400

    current_app.logger.info("Student registered", extra={"user_id": user.id})
    return jsonify({"message": "Registration successful.", "user": user.account_payload()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return form_error_response(form)

    email = form.email.data.lower().strip()
    attempt_key = f"login:{request.remote_addr}:{email}"
    if not track_attempt(attempt_key, limit=LOGIN_ATTEMPT_LIMIT):
        current_app.logger.warning("Login rate limit hit", extra={"ip": request.remote_addr})
        return jsonify({"error": "Too many login attempts. Try again later."}), 429

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(form.password.data):
        log_action("LOGIN_FAILED", user)
        db.session.commit()
        return jsonify({"error": "Invalid credentials provided."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account is inactive. Please contact support."}), 403

    remember = bool(form.remember_me.data)
    login_user(user, remember=remember, duration=timedelta(days=30) if remember else None)
    session.permanent = remember
    reset_attempts(attempt_key)
    user.last_login_at = datetime.utcnow()
    db.session.add(user)
    log_action("LOGIN", user)
    db.session.commit()
    return jsonify({"message": "Signed in.", "user": user.account_payload()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user = current_user._get_current_object()
    logout_user()
    session.clear()
    log_action("LOGOUT", user)
    db.session.commit()
    return jsonify({"message": "You have been logged out."})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.account_payload()})


def log_action(action: str, user: User | None, context: str | None = None):
    entry = AuditLog(
        user_id=user.id if user else None,
        action_type=action,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent", "unknown"),
        context_entity=context,
    )
    db.session.add(entry)
