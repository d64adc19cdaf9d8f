"""Complaint intake for students and triage for staff."""
from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from wtforms import BooleanField, SelectField, StringField, TextAreaField
from wtforms.validators import AnyOf, DataRequired, Optional, ValidationError

from models import COMPLAINT_CATEGORIES, COMPLAINT_STATUSES, ROLE_ADMIN, ROLE_STAFF, ROLE_STUDENT, Complaint
from extensions import complaint_feed
from utils.complaint_filters import status_counts
from utils.complaint_lifecycle import (
    ComplaintNotFound,
    ComplaintValidationError,
    InvalidTransitionError,
    create_complaint,
    get_complaint,
    list_all_complaints,
    list_own_complaints,
    set_status,
    submit_response,
)
from utils.complaint_store import StoreError
from utils.decorators import roles_required
from utils.security import sanitize_input

complaints_bp = Blueprint("complaints", __name__, url_prefix="/complaints")


def _text_only(form, field):
    # JSON values arrive unconverted. Length limits come from config in the lifecycle layer.
    if not isinstance(field.data, str):
        raise ValidationError("Must be text.")


class ComplaintForm(FlaskForm):
    title = StringField("Title", validators=[DataRequired(), _text_only])
    category = SelectField(
        "Category",
        choices=[(c, c.title()) for c in COMPLAINT_CATEGORIES],
        validators=[DataRequired()],
    )
    description = TextAreaField("Description", validators=[DataRequired(), _text_only])


class StatusForm(FlaskForm):
    status = StringField("Status", validators=[DataRequired(), AnyOf(COMPLAINT_STATUSES, message="Invalid status.")])
    reopen = BooleanField("Reopen")


class ResponseForm(FlaskForm):
    message = TextAreaField("Your Response", validators=[DataRequired(), _text_only])
    status = StringField("Update Status", validators=[Optional(), AnyOf(COMPLAINT_STATUSES, message="Invalid status.")])
    reopen = BooleanField("Reopen")


def _form_error(form: FlaskForm, message: str):
    return jsonify({"error": message, "fields": form.errors}), 400


def _status_filter():
    status = sanitize_input(request.args).get("status")
    return status if status in COMPLAINT_STATUSES else None


def _complaint_or_404(complaint_id) -> Complaint:
    try:
        complaint = get_complaint(str(complaint_id))
    except ComplaintNotFound:
        abort(404)
    except StoreError:
        current_app.logger.exception("Database error while loading complaint")
        abort(500)
    if not current_user.is_staff and complaint.student_id != current_user.id:
        abort(403)
    return complaint


@complaints_bp.route("/", methods=["POST"])
@roles_required(ROLE_STUDENT)
def new_complaint():
    form = ComplaintForm()
    if not form.validate_on_submit():
        return _form_error(form, "Please correct the complaint details.")

    try:
        # Any status sent by the client is ignored: new complaints always start open.
        complaint = create_complaint(
            current_user.id,
            form.title.data,
            form.category.data,
            form.description.data,
        )
    except ComplaintValidationError as exc:
        current_app.logger.warning("Complaint rejected", extra={"error": str(exc)})
        return jsonify({"error": str(exc)}), 400
    except StoreError:
        current_app.logger.exception("Database error while saving complaint")
        return jsonify({"error": "Error submitting complaint"}), 500

    return (
        jsonify({"message": "Complaint submitted successfully!", "complaint": complaint.to_payload()}),
        201,
    )


@complaints_bp.route("/mine", methods=["GET"])
@login_required
def list_my_complaints():
    try:
        complaints = list_own_complaints(current_user.id, status=_status_filter())
    except StoreError:
        current_app.logger.exception("Database error while listing complaints")
        return jsonify({"error": "Error loading complaints"}), 500
    return jsonify({"complaints": [c.to_payload() for c in complaints], "count": len(complaints)})


@complaints_bp.route("/", methods=["GET"])
@roles_required(ROLE_STAFF, ROLE_ADMIN)
def list_complaints():
    try:
        complaints = list_all_complaints(status=_status_filter())
    except StoreError:
        current_app.logger.exception("Database error while listing complaints")
        return jsonify({"error": "Error loading complaints"}), 500
    return jsonify(
        {
            "complaints": [c.to_payload(include_student=True) for c in complaints],
            "counts": status_counts(complaints),
        }
    )


@complaints_bp.route("/summary", methods=["GET"])
@login_required
def complaint_summary():
    try:
        if current_user.is_staff:
            complaints = list_all_complaints()
        else:
            complaints = list_own_complaints(current_user.id)
    except StoreError:
        current_app.logger.exception("Database error while summarizing complaints")
        return jsonify({"error": "Error loading complaints"}), 500
    return jsonify({"counts": status_counts(complaints), "version": complaint_feed.version})


@complaints_bp.route("/feed", methods=["GET"])
@login_required
def complaint_feed_state():
    return jsonify(complaint_feed.snapshot())


@complaints_bp.route("/<string:complaint_id>", methods=["GET"])
@login_required
def view_complaint(complaint_id):
    complaint = _complaint_or_404(complaint_id)
    return jsonify({"complaint": complaint.to_payload(include_student=current_user.is_staff)})


@complaints_bp.route("/<string:complaint_id>/history", methods=["GET"])
@login_required
def complaint_history(complaint_id):
    complaint = _complaint_or_404(complaint_id)
    return jsonify({"history": [entry.to_payload() for entry in complaint.status_history]})


@complaints_bp.route("/<string:complaint_id>/status", methods=["POST"])
@roles_required(ROLE_STAFF, ROLE_ADMIN)
def update_status(complaint_id):
    form = StatusForm()
    if not form.validate_on_submit():
        return _form_error(form, "Invalid status.")

    try:
        complaint = set_status(
            complaint_id,
            form.status.data,
            actor_id=current_user.id,
            reopen=bool(form.reopen.data),
        )
    except ComplaintNotFound:
        abort(404)
    except InvalidTransitionError as exc:
        current_app.logger.warning("Status transition rejected", extra={"complaint_id": complaint_id, "error": str(exc)})
        return jsonify({"error": str(exc)}), 409
    except ComplaintValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except StoreError:
        current_app.logger.exception("Database error while updating status")
        return jsonify({"error": "Error updating status"}), 500

    return jsonify({"message": "Status updated successfully!", "complaint": complaint.to_payload(include_student=True)})


@complaints_bp.route("/<string:complaint_id>/responses", methods=["POST"])
@roles_required(ROLE_STAFF, ROLE_ADMIN)
def respond_to_complaint(complaint_id):
    form = ResponseForm()
    if not form.validate_on_submit():
        return _form_error(form, "Please provide a response message.")

    try:
        response = submit_response(
            complaint_id,
            current_user.id,
            form.message.data,
            new_status=form.status.data or None,
            reopen=bool(form.reopen.data),
        )
    except ComplaintNotFound:
        abort(404)
    except InvalidTransitionError as exc:
        current_app.logger.warning("Status transition rejected", extra={"complaint_id": complaint_id, "error": str(exc)})
        return jsonify({"error": str(exc)}), 409
    except ComplaintValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except StoreError:
        current_app.logger.exception("Database error while submitting response")
        return jsonify({"error": "Error submitting response"}), 500

    payload = {"message": "Response submitted successfully!", "response": response.to_payload()}
    try:
        payload["complaint"] = get_complaint(complaint_id).to_payload(include_student=True)
    except (ComplaintNotFound, StoreError):
        # The response is saved; only the refreshed complaint view is missing.
        current_app.logger.exception("Database error while reloading complaint", extra={"complaint_id": complaint_id})
        payload["complaint"] = None
    return jsonify(payload), 201

