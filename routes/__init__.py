"""Blueprint registration, service index, and role-based dashboards."""
from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required

from extensions import complaint_feed
from utils.complaint_filters import partition_by_status
from utils.complaint_lifecycle import list_all_complaints, list_own_complaints
from utils.complaint_store import StoreError
from .auth import auth_bp
from .complaints import complaints_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index():
    return jsonify({"service": "campus-complaints", "status": "ok"})


@main_bp.route("/dashboard")
@login_required
def dashboard():
    """Student dashboards list their own complaints; staff dashboards get every complaint bucketed by status."""
    staff_view = current_user.is_staff
    try:
        if staff_view:
            complaints = list_all_complaints()
        else:
            complaints = list_own_complaints(current_user.id)
    except StoreError:
        current_app.logger.exception("Database error while building dashboard")
        return jsonify({"error": "Error loading complaints"}), 500

    buckets = partition_by_status(complaints)
    payloads = {
        key: [c.to_payload(include_student=staff_view) for c in items]
        for key, items in buckets.items()
    }
    current_app.logger.info(
        "dashboard_compiled",
        extra={"user_id": current_user.id, "role": current_user.role_name, "complaints": len(complaints)},
    )
    return jsonify(
        {
            "role": current_user.role_name,
            "view": "staff" if staff_view else "student",
            "counts": {key: len(items) for key, items in buckets.items()},
            "buckets": payloads,
            "version": complaint_feed.version,
        }
    )


__all__ = ["main_bp", "auth_bp", "complaints_bp"]
