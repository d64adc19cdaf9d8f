import pytest

from extensions import complaint_feed, db
from models import Complaint, ComplaintResponse, ComplaintStatusHistory
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
    transition_allowed,
)
from utils.complaint_store import ComplaintStore, StoreError


class RecordingStore(ComplaintStore):
    def __init__(self):
        super().__init__()
        self.calls = []

    def insert_row(self, table, fields):
        self.calls.append(("insert", table, dict(fields)))
        return super().insert_row(table, fields)

    def update_row(self, table, row_id, fields):
        self.calls.append(("update", table, dict(fields)))
        return super().update_row(table, row_id, fields)

    def writes(self, action=None, table=None):
        return [
            call
            for call in self.calls
            if (action is None or call[0] == action) and (table is None or call[1] == table)
        ]


class FailingStatusStore(RecordingStore):
    def update_row(self, table, row_id, fields):
        if table == "complaints" and "status" in fields:
            self.calls.append(("update", table, dict(fields)))
            raise StoreError("simulated outage")
        return super().update_row(table, row_id, fields)


def _reload(complaint_id):
    db.session.expire_all()
    return db.session.get(Complaint, complaint_id)


def _new_complaint(student_id, **kwargs):
    params = {
        "title": "Wifi down",
        "category": "technical",
        "description": "No connection in the library since Monday.",
    }
    params.update(kwargs)
    return create_complaint(student_id, params["title"], params["category"], params["description"])


def test_wifi_scenario(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    assert complaint.status == "open"
    assert complaint.category == "technical"

    set_status(complaint.id, "in_progress", actor_id=staff_id)
    assert _reload(complaint.id).status == "in_progress"

    response = submit_response(complaint.id, staff_id, "Looking into it", "resolved")

    stored = _reload(complaint.id)
    assert stored.status == "resolved"
    assert [r.message for r in stored.responses] == ["Looking into it"]
    assert response.responder_id == staff_id


def test_create_always_starts_open(app_ctx, student_id):
    store = RecordingStore()
    complaint = create_complaint(student_id, "Late grades", "academics", "Marks not posted.", store=store)

    assert complaint.status == "open"
    (insert,) = store.writes("insert", "complaints")
    assert insert[2]["status"] == "open"


def test_create_trims_text(app_ctx, student_id):
    complaint = create_complaint(student_id, "  Broken chair  ", "facilities", "  Seat 12  ")

    assert complaint.title == "Broken chair"
    assert complaint.description == "Seat 12"


@pytest.mark.parametrize(
    "title, category, description",
    [
        ("", "technical", "desc"),
        ("   ", "technical", "desc"),
        ("Title", "technical", ""),
        ("Title", "sports", "desc"),
        ("Title", None, "desc"),
    ],
)
def test_create_rejects_bad_input_before_writing(app_ctx, student_id, title, category, description):
    store = RecordingStore()

    with pytest.raises(ComplaintValidationError):
        create_complaint(student_id, title, category, description, store=store)
    assert store.calls == []


def test_create_rejects_overlong_title(app_ctx, student_id):
    app_ctx.config["COMPLAINT_TITLE_MAX"] = 10

    with pytest.raises(ComplaintValidationError, match="at most 10"):
        create_complaint(student_id, "x" * 11, "other", "desc")


def test_set_status_rejects_values_outside_enum(app_ctx, student_id):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    with pytest.raises(ComplaintValidationError):
        set_status(complaint.id, "closed", store=store)
    assert store.calls == []
    assert _reload(complaint.id).status == "open"


def test_set_status_allows_any_transition_by_default(app_ctx, student_id):
    complaint = _new_complaint(student_id)

    for status in ("resolved", "open", "in_progress", "open", "resolved", "in_progress"):
        set_status(complaint.id, status)
        assert _reload(complaint.id).status == status


def test_set_status_last_writer_wins(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)

    set_status(complaint.id, "in_progress", actor_id=staff_id)
    set_status(complaint.id, "resolved", actor_id=staff_id)

    assert _reload(complaint.id).status == "resolved"


def test_set_status_unknown_complaint(app_ctx):
    with pytest.raises(ComplaintNotFound):
        set_status("does-not-exist", "resolved")


def test_status_history_records_only_real_changes(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)

    set_status(complaint.id, "in_progress", actor_id=staff_id)
    set_status(complaint.id, "in_progress", actor_id=staff_id)
    set_status(complaint.id, "resolved", actor_id=staff_id)

    history = ComplaintStatusHistory.query.filter_by(complaint_id=complaint.id).order_by(ComplaintStatusHistory.id).all()
    assert [(h.previous_status, h.new_status) for h in history] == [("open", "in_progress"), ("in_progress", "resolved")]
    assert all(h.changed_by == staff_id for h in history)


def test_submit_response_with_same_status_skips_status_update(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    submit_response(complaint.id, staff_id, "We are checking", "open", store=store)

    assert len(store.writes("insert", "complaint_responses")) == 1
    assert store.writes("update") == []
    assert store.writes("insert", "complaint_status_history") == []


def test_submit_response_without_status(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    submit_response(complaint.id, staff_id, "Noted", store=store)

    assert store.writes("update") == []
    assert _reload(complaint.id).status == "open"


def test_submit_response_changes_status_once(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    submit_response(complaint.id, staff_id, "Fixed the router", "resolved", store=store)

    updates = store.writes("update", "complaints")
    assert [u[2] for u in updates] == [{"status": "resolved"}]
    assert _reload(complaint.id).status == "resolved"


@pytest.mark.parametrize("message", ["", "   ", None])
def test_submit_response_rejects_empty_message_before_writing(app_ctx, student_id, staff_id, message):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    with pytest.raises(ComplaintValidationError):
        submit_response(complaint.id, staff_id, message, "resolved", store=store)

    assert store.calls == []
    assert _reload(complaint.id).status == "open"
    assert ComplaintResponse.query.count() == 0


def test_submit_response_rejects_unknown_status(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = RecordingStore()

    with pytest.raises(ComplaintValidationError):
        submit_response(complaint.id, staff_id, "ok", "escalated", store=store)
    assert store.calls == []


def test_submit_response_unknown_complaint(app_ctx, staff_id):
    with pytest.raises(ComplaintNotFound):
        submit_response("missing", staff_id, "hello")


def test_non_atomic_failure_keeps_response_and_old_status(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = FailingStatusStore()

    with pytest.raises(StoreError):
        submit_response(complaint.id, staff_id, "Looking into it", "resolved", store=store, atomic=False)

    assert _reload(complaint.id).status == "open"
    assert [r.message for r in ComplaintResponse.query.filter_by(complaint_id=complaint.id)] == ["Looking into it"]


def test_atomic_failure_rolls_back_response(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    store = FailingStatusStore()

    with pytest.raises(StoreError):
        submit_response(complaint.id, staff_id, "Looking into it", "resolved", store=store, atomic=True)

    assert _reload(complaint.id).status == "open"
    assert ComplaintResponse.query.count() == 0


def test_atomic_mode_follows_config(app_ctx, student_id, staff_id):
    app_ctx.config["RESPONSE_STATUS_ATOMIC"] = False
    complaint = _new_complaint(student_id)

    with pytest.raises(StoreError):
        submit_response(complaint.id, staff_id, "Partial", "resolved", store=FailingStatusStore())

    assert ComplaintResponse.query.count() == 1


def test_strict_transitions(app_ctx, student_id):
    app_ctx.config["STRICT_STATUS_TRANSITIONS"] = True
    complaint = _new_complaint(student_id)

    set_status(complaint.id, "in_progress")
    with pytest.raises(InvalidTransitionError):
        set_status(complaint.id, "open")

    set_status(complaint.id, "resolved")
    with pytest.raises(InvalidTransitionError):
        set_status(complaint.id, "open")

    set_status(complaint.id, "open", reopen=True)
    assert _reload(complaint.id).status == "open"


def test_strict_transitions_apply_to_responses(app_ctx, student_id, staff_id):
    app_ctx.config["STRICT_STATUS_TRANSITIONS"] = True
    complaint = _new_complaint(student_id)
    set_status(complaint.id, "resolved")
    store = RecordingStore()

    with pytest.raises(InvalidTransitionError):
        submit_response(complaint.id, staff_id, "Reopening", "in_progress", store=store)
    assert store.calls == []

    submit_response(complaint.id, staff_id, "Reopening", "in_progress", reopen=True)
    assert _reload(complaint.id).status == "in_progress"


def test_transition_table():
    assert transition_allowed("open", "open")
    assert transition_allowed("open", "in_progress")
    assert transition_allowed("open", "resolved")
    assert transition_allowed("in_progress", "resolved")
    assert not transition_allowed("in_progress", "open")
    assert not transition_allowed("resolved", "in_progress")
    assert transition_allowed("resolved", "in_progress", reopen=True)


def test_lists_scope_to_owner(app_ctx, student_id, other_student_id):
    mine = _new_complaint(student_id, title="Mine")
    theirs = _new_complaint(other_student_id, title="Theirs")
    set_status(theirs.id, "resolved")

    assert [c.id for c in list_own_complaints(student_id)] == [mine.id]
    assert {c.id for c in list_all_complaints()} == {mine.id, theirs.id}
    assert [c.id for c in list_all_complaints(status="resolved")] == [theirs.id]
    assert list_own_complaints(student_id, status="resolved") == []


def test_get_complaint_joins_author_and_responses(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    submit_response(complaint.id, staff_id, "First")
    submit_response(complaint.id, staff_id, "Second")

    loaded = get_complaint(complaint.id)

    assert loaded.student.email == "asha@campus.edu"
    assert sorted(r.message for r in loaded.responses) == ["First", "Second"]
    with pytest.raises(ComplaintNotFound):
        get_complaint("missing")


def test_every_write_moves_the_feed(app_ctx, student_id, staff_id):
    start = complaint_feed.version
    complaint = _new_complaint(student_id)
    after_create = complaint_feed.version
    set_status(complaint.id, "in_progress")
    after_status = complaint_feed.version
    submit_response(complaint.id, staff_id, "Update")

    assert start < after_create < after_status < complaint_feed.version
    assert complaint_feed.snapshot()["last_event"]["complaint_id"] == complaint.id


def test_failed_validation_does_not_move_the_feed(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    version = complaint_feed.version

    with pytest.raises(ComplaintValidationError):
        submit_response(complaint.id, staff_id, "  ")

    assert complaint_feed.version == version


class InterleavingStore(ComplaintStore):
    """Runs ``hook`` once, after loading a row and before handing it back."""

    def __init__(self, hook):
        super().__init__()
        self._hook = hook

    def get_row(self, table, row_id, joins=()):
        row = super().get_row(table, row_id, joins)
        hook, self._hook = self._hook, None
        if hook:
            hook()
        return row


def test_concurrent_status_writes_last_one_wins(app_ctx, student_id, staff_id):
    complaint_id = _new_complaint(student_id).id
    seen = []

    def other_writer():
        seen.append(ComplaintStore().get_row("complaints", complaint_id).status)
        set_status(complaint_id, "resolved", actor_id=staff_id, store=ComplaintStore())

    # This writer loads first, then the other writer loads and commits before this one writes.
    set_status(complaint_id, "in_progress", actor_id=staff_id, store=InterleavingStore(other_writer))

    assert seen == ["open"]
    assert _reload(complaint_id).status == "in_progress"


def test_non_atomic_status_change_moves_the_feed_once(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    version = complaint_feed.version

    submit_response(complaint.id, staff_id, "Fixed", "resolved", atomic=False)

    assert complaint_feed.version == version + 1
    assert _reload(complaint.id).status == "resolved"


def test_non_atomic_failure_still_moves_the_feed(app_ctx, student_id, staff_id):
    complaint = _new_complaint(student_id)
    version = complaint_feed.version

    with pytest.raises(StoreError):
        submit_response(complaint.id, staff_id, "Partial", "resolved", store=FailingStatusStore(), atomic=False)

    assert complaint_feed.version == version + 1
