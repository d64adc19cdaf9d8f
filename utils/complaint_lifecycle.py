"""Complaint lifecycle: creation, status changes, and staff responses."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app

from extensions import complaint_feed
from models import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_STATUS_IN_PROGRESS,
    COMPLAINT_STATUS_OPEN,
    COMPLAINT_STATUS_RESOLVED,
    COMPLAINT_STATUSES,
    Complaint,
    ComplaintResponse,
)
from utils.complaint_store import ComplaintStore, StoreError

# Only consulted when STRICT_STATUS_TRANSITIONS is on.
FORWARD_TRANSITIONS = {
    COMPLAINT_STATUS_OPEN: {COMPLAINT_STATUS_IN_PROGRESS, COMPLAINT_STATUS_RESOLVED},
    COMPLAINT_STATUS_IN_PROGRESS: {COMPLAINT_STATUS_RESOLVED},
    COMPLAINT_STATUS_RESOLVED: set(),
}
REOPEN_TRANSITIONS = {
    COMPLAINT_STATUS_RESOLVED: {COMPLAINT_STATUS_OPEN, COMPLAINT_STATUS_IN_PROGRESS},
}


class ComplaintValidationError(ValueError):
    """Raised when complaint input is rejected before touching the store."""


class InvalidTransitionError(ComplaintValidationError):
    """Raised when strict transitions are enabled and a status edge is not allowed."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move complaint from {current} to {requested}")
        self.current = current
        self.requested = requested


class ComplaintNotFound(LookupError):
    """Raised when a complaint id does not match any stored complaint."""


def _require_text(value: Optional[str], label: str, max_length: Optional[int] = None) -> str:
    text = (value or "").strip()
    if not text:
        raise ComplaintValidationError(f"{label} is required")
    if max_length and len(text) > max_length:
        raise ComplaintValidationError(f"{label} must be at most {max_length} characters")
    return text


def validate_status(status: Optional[str]) -> str:
    if status not in COMPLAINT_STATUSES:
        raise ComplaintValidationError(f"Invalid status: {status!r}")
    return status


def transition_allowed(current: str, requested: str, reopen: bool = False) -> bool:
    if current == requested:
        return True
    if requested in FORWARD_TRANSITIONS.get(current, set()):
        return True
    return reopen and requested in REOPEN_TRANSITIONS.get(current, set())


def _strict_transitions() -> bool:
    return bool(current_app.config.get("STRICT_STATUS_TRANSITIONS", False))


def _check_transition(current: str, requested: str, reopen: bool) -> None:
    if _strict_transitions() and not transition_allowed(current, requested, reopen=reopen):
        raise InvalidTransitionError(current, requested)


def _load_complaint(store: ComplaintStore, complaint_id: str) -> Complaint:
    complaint = store.get_row("complaints", complaint_id)
    if complaint is None:
        raise ComplaintNotFound(f"Complaint {complaint_id} not found")
    return complaint


def _apply_status(store: ComplaintStore, complaint: Complaint, status: str, actor_id: Optional[str]) -> Complaint:
    previous = complaint.status
    updated = store.update_row("complaints", complaint.id, {"status": status})
    if updated is None:
        raise ComplaintNotFound(f"Complaint {complaint.id} not found")
    if previous != status:
        store.insert_row(
            "complaint_status_history",
            {
                "complaint_id": complaint.id,
                "previous_status": previous,
                "new_status": status,
                "changed_by": actor_id,
            },
        )
    return updated


def create_complaint(
    student_id: str,
    title: str,
    category: str,
    description: str,
    store: Optional[ComplaintStore] = None,
) -> Complaint:
    """Insert a new complaint for ``student_id``; status always starts as ``open``."""
    store = store or ComplaintStore()
    config = current_app.config
    if category not in COMPLAINT_CATEGORIES:
        raise ComplaintValidationError(f"Invalid category: {category!r}")
    fields = {
        "student_id": student_id,
        "title": _require_text(title, "Title", config.get("COMPLAINT_TITLE_MAX")),
        "description": _require_text(description, "Description", config.get("COMPLAINT_DESCRIPTION_MAX")),
        "category": category,
        "status": COMPLAINT_STATUS_OPEN,
    }

    complaint = store.insert_row("complaints", fields)
    current_app.logger.info(
        "Complaint created",
        extra={"complaint_id": complaint.id, "student_id": student_id, "category": category},
    )
    complaint_feed.invalidate(complaint.id, reason="created")
    return complaint


def set_status(
    complaint_id: str,
    status: str,
    actor_id: Optional[str] = None,
    reopen: bool = False,
    store: Optional[ComplaintStore] = None,
) -> Complaint:
    """Overwrite the complaint status. Concurrent callers race: the last write wins."""
    store = store or ComplaintStore()
    validate_status(status)
    complaint = _load_complaint(store, complaint_id)
    previous = complaint.status
    _check_transition(previous, status, reopen)

    with store.transaction():
        complaint = _apply_status(store, complaint, status, actor_id)

    current_app.logger.info(
        "Complaint status updated",
        extra={"complaint_id": complaint_id, "previous_status": previous, "status": status, "actor_id": actor_id},
    )
    complaint_feed.invalidate(complaint_id, reason="status")
    return complaint


def submit_response(
    complaint_id: str,
    responder_id: str,
    message: str,
    new_status: Optional[str] = None,
    reopen: bool = False,
    store: Optional[ComplaintStore] = None,
    atomic: Optional[bool] = None,
) -> ComplaintResponse:
    """Append a staff response and, when ``new_status`` differs, move the complaint to it.

    With ``atomic`` (default from ``RESPONSE_STATUS_ATOMIC``) both writes commit
    together. Without it the response commits first and a failed status update
    leaves the response in place.
    """
    store = store or ComplaintStore()
    text = _require_text(message, "Message", current_app.config.get("RESPONSE_MESSAGE_MAX"))
    if new_status is not None:
        validate_status(new_status)
    if atomic is None:
        atomic = bool(current_app.config.get("RESPONSE_STATUS_ATOMIC", True))

    complaint = _load_complaint(store, complaint_id)
    change_status = new_status is not None and new_status != complaint.status
    if change_status:
        _check_transition(complaint.status, new_status, reopen)

    response_fields = {"complaint_id": complaint.id, "responder_id": responder_id, "message": text}
    if atomic:
        with store.transaction():
            response = store.insert_row("complaint_responses", response_fields)
            if change_status:
                _apply_status(store, complaint, new_status, responder_id)
    else:
        response = store.insert_row("complaint_responses", response_fields)
        if change_status:
            try:
                with store.transaction():
                    _apply_status(store, complaint, new_status, responder_id)
            except StoreError:
                # The response is already committed.
                complaint_feed.invalidate(complaint_id, reason="response")
                raise

    current_app.logger.info(
        "Complaint response submitted",
        extra={
            "complaint_id": complaint_id,
            "responder_id": responder_id,
            "status_changed": change_status,
            "atomic": atomic,
        },
    )
    complaint_feed.invalidate(complaint_id, reason="response")
    return response


def get_complaint(complaint_id: str, store: Optional[ComplaintStore] = None) -> Complaint:
    store = store or ComplaintStore()
    complaint = store.get_row("complaints", complaint_id, joins=("student", "responses.responder"))
    if complaint is None:
        raise ComplaintNotFound(f"Complaint {complaint_id} not found")
    return complaint


def list_own_complaints(
    student_id: str, status: Optional[str] = None, store: Optional[ComplaintStore] = None
) -> List[Complaint]:
    store = store or ComplaintStore()
    filters = {"student_id": student_id}
    if status:
        filters["status"] = validate_status(status)
    return store.select_rows("complaints", filters=filters, joins=("responses.responder",))


def list_all_complaints(status: Optional[str] = None, store: Optional[ComplaintStore] = None) -> List[Complaint]:
    store = store or ComplaintStore()
    filters = {"status": validate_status(status)} if status else None
    return store.select_rows("complaints", filters=filters, joins=("student", "responses.responder"))
