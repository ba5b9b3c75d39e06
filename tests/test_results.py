import pytest

from app.api.v1.results import service as results_service
from app.api.v1.results.schemas import DraftEntry, DraftSave, DraftsBulkSave, ResultScope, ResultUnlock
from app.core.config import settings
from app.core.enums import Collection, SubmissionStatus
from app.core.exceptions import ExecutionError, InvalidStateError, PartialExecutionError, ValidationError
from app.store import Filter

from tests.factories import RecordingStore, make_pupil

SESSION = "2024/2025"
TERM = "First Term"


def _scope(class_id: str, subject: str = "Math") -> ResultScope:
    return ResultScope(class_id=class_id, session=SESSION, term=TERM, subject=subject)


def _draft(class_id: str, pupil_id: str, ca: int, exam: int, subject: str = "Math") -> DraftSave:
    return DraftSave(
        class_id=class_id,
        session=SESSION,
        term=TERM,
        subject=subject,
        pupil_id=pupil_id,
        ca_score=ca,
        exam_score=exam,
    )


@pytest.mark.parametrize(
    "total,grade",
    [(100, "A1"), (75, "A1"), (74, "B2"), (65, "B3"), (60, "C4"), (55, "C5"), (50, "C6"), (45, "D7"), (40, "D8"), (39, "F9"), (0, "F9")],
)
def test_calculate_grade_boundaries(total, grade) -> None:
    assert results_service.calculate_grade(total) == grade


@pytest.mark.asyncio
async def test_math_scenario_draft_submit_approve(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    p2 = await make_pupil(store, "Bayo", primary1.id)

    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 35, 50))
    await results_service.save_draft(store, teacher, _draft(primary1.id, p2.id, 20, 30))

    submission = await results_service.submit(store, teacher, _scope(primary1.id))
    assert submission.status == SubmissionStatus.pending.value
    assert submission.pupil_count == 2
    assert submission.teacher_name == "Mrs Bello"
    drafts = await results_service.list_drafts(store, _scope(primary1.id))
    assert {d.status for d in drafts} == {"pending"}

    result = await results_service.approve(store, admin, submission.id)
    assert result.records_published == 2
    assert result.chunks_committed == 1
    assert result.submission.status == SubmissionStatus.approved.value

    lock = await results_service.is_locked(store, primary1.id, TERM, "Math", SESSION)
    assert lock.locked is True

    records = await store.query(Collection.RESULTS.value, [Filter.eq("classId", primary1.id)])
    by_pupil = {r.data["pupilId"]: r.data for r in records}
    assert len(by_pupil) == 2
    assert (by_pupil[p1.id]["total"], by_pupil[p1.id]["grade"]) == (85, "A1")
    assert (by_pupil[p2.id]["total"], by_pupil[p2.id]["grade"]) == (50, "C6")

    drafts = await results_service.list_drafts(store, _scope(primary1.id))
    assert {d.status for d in drafts} == {"approved"}


@pytest.mark.asyncio
async def test_is_locked_defaults_to_unlocked(store, school) -> None:
    lock = await results_service.is_locked(store, school["Primary1"].id, TERM, "Math", SESSION)
    assert lock.locked is False


@pytest.mark.asyncio
async def test_rejected_results_can_be_corrected_and_resubmitted(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 10, 10))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))

    rejected = await results_service.reject(store, admin, submission.id, "CA scores look wrong")
    assert rejected.status == SubmissionStatus.rejected.value
    assert rejected.rejection_reason == "CA scores look wrong"
    drafts = await results_service.list_drafts(store, _scope(primary1.id))
    assert drafts[0].status == "rejected"
    assert drafts[0].ca_score == 10

    corrected = await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 40))
    assert corrected.status == "draft"
    assert corrected.total == 70

    resubmitted = await results_service.submit(store, teacher, _scope(primary1.id))
    assert resubmitted.status == SubmissionStatus.pending.value
    assert resubmitted.rejection_reason is None


@pytest.mark.asyncio
async def test_pending_and_locked_scopes_cannot_be_edited(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 10, 10))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))

    with pytest.raises(InvalidStateError):
        await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 20, 20))
    with pytest.raises(InvalidStateError):
        await results_service.submit(store, teacher, _scope(primary1.id))

    await results_service.approve(store, admin, submission.id)
    with pytest.raises(InvalidStateError):
        await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 20, 20))
    with pytest.raises(InvalidStateError):
        await results_service.approve(store, admin, submission.id)

    # Other subjects in the same class stay editable.
    other = await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 20, 20, subject="English"))
    assert other.status == "draft"


@pytest.mark.asyncio
@pytest.mark.parametrize("ca,exam", [(41, 10), (-1, 10), (10, 61), (10, -5)])
async def test_out_of_range_scores_are_rejected(store, school, teacher, ca, exam) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    with pytest.raises(ValidationError):
        await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, ca, exam))
    assert await store.query(Collection.RESULT_DRAFTS.value) == []


@pytest.mark.asyncio
async def test_absent_pupil_scores_zero(store, school, teacher) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    payload = DraftSave(
        class_id=primary1.id, session=SESSION, term=TERM, subject="Math", pupil_id=p1.id, absent=True, ca_score=30
    )
    draft = await results_service.save_draft(store, teacher, payload)
    assert draft.total == 0
    assert draft.status == "absent"


@pytest.mark.asyncio
async def test_submit_without_drafts_fails(store, school, teacher) -> None:
    with pytest.raises(ValidationError):
        await results_service.submit(store, teacher, _scope(school["Primary1"].id))


@pytest.mark.asyncio
async def test_bulk_save_validates_every_row_first(store, school, teacher) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    p2 = await make_pupil(store, "Bayo", primary1.id)
    bad = DraftsBulkSave(
        class_id=primary1.id,
        session=SESSION,
        term=TERM,
        subject="Math",
        entries=[DraftEntry(pupil_id=p1.id, ca_score=20, exam_score=40), DraftEntry(pupil_id=p2.id, ca_score=99)],
    )
    with pytest.raises(ValidationError):
        await results_service.save_drafts(store, teacher, bad)
    assert await store.query(Collection.RESULT_DRAFTS.value) == []

    good = bad.model_copy(
        update={"entries": [DraftEntry(pupil_id=p1.id, ca_score=20, exam_score=40), DraftEntry(pupil_id=p2.id, absent=True)]}
    )
    drafts = await results_service.save_drafts(store, teacher, good)
    assert sorted(d.total for d in drafts) == [0, 60]


@pytest.mark.asyncio
async def test_pupil_from_another_class_is_rejected(store, school, teacher) -> None:
    outsider = await make_pupil(store, "Chidi", school["Nursery1"].id)
    with pytest.raises(ValidationError):
        await results_service.save_draft(store, teacher, _draft(school["Primary1"].id, outsider.id, 10, 10))


@pytest.mark.asyncio
async def test_pupils_only_see_approved_results(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 30))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))
    assert await results_service.list_pupil_results(store, p1.id) == []

    await results_service.approve(store, admin, submission.id)
    visible = await results_service.list_pupil_results(store, p1.id)
    assert [(r.subject, r.total, r.grade) for r in visible] == [("Math", 60, "C4")]


@pytest.mark.asyncio
async def test_unlock_reopens_scope_and_hides_records(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 30))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))
    await results_service.approve(store, admin, submission.id)

    unlock = ResultUnlock(class_id=primary1.id, session=SESSION, term=TERM, subject="Math", reason="Exam remarked")
    lock = await results_service.unlock(store, admin, unlock)
    assert lock.locked is False
    assert (await results_service.get_submission(store, submission.id)).status == SubmissionStatus.rejected.value
    assert await results_service.list_pupil_results(store, p1.id) == []

    with pytest.raises(InvalidStateError):
        await results_service.unlock(store, admin, unlock)

    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 35, 40))
    await results_service.submit(store, teacher, _scope(primary1.id))
    await results_service.approve(store, admin, submission.id)
    visible = await results_service.list_pupil_results(store, p1.id)
    assert [(r.total, r.grade) for r in visible] == [(75, "A1")]

    lock_doc = await store.get(Collection.RESULT_LOCKS.value, submission.id)
    assert len(lock_doc.data["unlockHistory"]) == 1


@pytest.mark.asyncio
async def test_list_pending_submissions(store, school, teacher) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 30))
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 20, 30, subject="English"))
    await results_service.submit(store, teacher, _scope(primary1.id))
    await results_service.submit(store, teacher, _scope(primary1.id, "English"))

    pending = await results_service.list_pending_submissions(store)
    assert {s.subject for s in pending} == {"Math", "English"}


async def _five_pupil_submission(store, school, teacher):
    primary1 = school["Primary1"]
    pupils = [await make_pupil(store, f"Pupil {i}", primary1.id) for i in range(5)]
    for i, pupil in enumerate(pupils):
        await results_service.save_draft(store, teacher, _draft(primary1.id, pupil.id, 20 + i, 30))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))
    return pupils, submission


def _touches_submission(ops) -> bool:
    return any(op.ref.collection == Collection.RESULT_SUBMISSIONS.value for op in ops)


@pytest.mark.asyncio
async def test_large_approval_is_chunked_and_retried(session_factory, store, school, teacher, admin, monkeypatch) -> None:
    pupils, submission = await _five_pupil_submission(store, school, teacher)
    small = RecordingStore(session_factory, max_batch_ops=5)
    monkeypatch.setattr(settings, "batch_chunk_size", 4)

    failures = {"left": 1}

    def fail_final_chunk_once(ops) -> bool:
        if _touches_submission(ops) and failures["left"]:
            failures["left"] -= 1
            return True
        return False

    small.fail_if = fail_final_chunk_once
    result = await results_service.approve(small, admin, submission.id)

    assert result.submission.status == SubmissionStatus.approved.value
    assert result.records_published == 5
    # 5 records + status + lock = 7 operations in chunks of 4.
    assert result.chunks_committed == 2
    assert (await results_service.is_locked(small, school["Primary1"].id, TERM, "Math", SESSION)).locked is True
    assert len(await results_service.list_pupil_results(small, pupils[0].id)) == 1

    snapshots = await small.query(
        Collection.RESULT_APPROVAL_SNAPSHOTS.value, [Filter.eq("submissionId", submission.id)], order_by="attempt"
    )
    assert [s.data["status"] for s in snapshots] == ["failed", "completed"]


@pytest.mark.asyncio
async def test_failed_chunked_approval_keeps_results_hidden(session_factory, store, school, teacher, admin, monkeypatch) -> None:
    pupils, submission = await _five_pupil_submission(store, school, teacher)
    small = RecordingStore(session_factory, max_batch_ops=5)
    monkeypatch.setattr(settings, "batch_chunk_size", 4)
    small.fail_if = _touches_submission

    with pytest.raises(PartialExecutionError):
        await results_service.approve(small, admin, submission.id)

    assert (await results_service.get_submission(small, submission.id)).status == SubmissionStatus.pending.value
    assert (await results_service.is_locked(small, school["Primary1"].id, TERM, "Math", SESSION)).locked is False
    for pupil in pupils:
        assert await results_service.list_pupil_results(small, pupil.id) == []


def test_keys_replace_session_slash() -> None:
    scope = ResultScope(class_id="c1", session="2024/2025", term=TERM, subject="Math")
    assert results_service.scope_key("c1", "2024/2025", TERM, "Math") == "c1_2024-2025_First Term_Math"
    assert "/" not in results_service.draft_key("p1", scope)
    assert results_service.record_key("p1", "2024/2025", TERM, "Math") == "p1_2024-2025_First Term_Math"


@pytest.mark.asyncio
async def test_submission_id_with_session_slash_round_trips(store, school, teacher) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 30))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))

    assert "/" not in submission.id
    assert submission.session == SESSION
    assert (await results_service.get_submission(store, submission.id)).id == submission.id


@pytest.mark.asyncio
async def test_approved_record_is_not_overwritten_from_another_class(store, school, teacher, admin) -> None:
    nursery1, nursery2 = school["Nursery1"], school["Nursery2"]
    ada = await make_pupil(store, "Ada", nursery1.id)
    await results_service.save_draft(store, teacher, _draft(nursery1.id, ada.id, 35, 50, subject="Numbers"))
    first = await results_service.submit(store, teacher, _scope(nursery1.id, "Numbers"))
    await results_service.approve(store, admin, first.id)

    await store.update(Collection.PUPILS.value, ada.id, {"class": {"id": nursery2.id, "name": "Nursery2"}})
    await results_service.save_draft(store, teacher, _draft(nursery2.id, ada.id, 1, 1, subject="Numbers"))
    second = await results_service.submit(store, teacher, _scope(nursery2.id, "Numbers"))

    with pytest.raises(InvalidStateError):
        await results_service.approve(store, admin, second.id)

    record = await store.get(Collection.RESULTS.value, results_service.record_key(ada.id, SESSION, TERM, "Numbers"))
    assert record.data["total"] == 85
    assert record.data["submissionId"] == first.id
    assert (await results_service.get_submission(store, second.id)).status == SubmissionStatus.pending.value
    assert (await results_service.is_locked(store, nursery2.id, TERM, "Numbers", SESSION)).locked is False


@pytest.mark.asyncio
async def test_record_from_a_rejected_scope_can_be_replaced(store, school, teacher, admin) -> None:
    nursery1, nursery2 = school["Nursery1"], school["Nursery2"]
    ada = await make_pupil(store, "Ada", nursery1.id)
    await results_service.save_draft(store, teacher, _draft(nursery1.id, ada.id, 35, 50, subject="Numbers"))
    first = await results_service.submit(store, teacher, _scope(nursery1.id, "Numbers"))
    await results_service.approve(store, admin, first.id)
    unlock = ResultUnlock(class_id=nursery1.id, session=SESSION, term=TERM, subject="Numbers", reason="Wrong class")
    await results_service.unlock(store, admin, unlock)

    await store.update(Collection.PUPILS.value, ada.id, {"class": {"id": nursery2.id, "name": "Nursery2"}})
    await results_service.save_draft(store, teacher, _draft(nursery2.id, ada.id, 20, 20, subject="Numbers"))
    second = await results_service.submit(store, teacher, _scope(nursery2.id, "Numbers"))
    await results_service.approve(store, admin, second.id)

    record = await store.get(Collection.RESULTS.value, results_service.record_key(ada.id, SESSION, TERM, "Numbers"))
    assert record.data["total"] == 40
    assert record.data["submissionId"] == second.id


@pytest.mark.asyncio
async def test_failed_single_commit_approval_raises_execution_error(store, school, teacher, admin) -> None:
    primary1 = school["Primary1"]
    p1 = await make_pupil(store, "Ada", primary1.id)
    await results_service.save_draft(store, teacher, _draft(primary1.id, p1.id, 30, 30))
    submission = await results_service.submit(store, teacher, _scope(primary1.id))
    store.fail_if = lambda ops: any(op.ref.collection == Collection.RESULTS.value for op in ops)

    with pytest.raises(ExecutionError) as exc_info:
        await results_service.approve(store, admin, submission.id)

    assert not isinstance(exc_info.value, PartialExecutionError)
    assert exc_info.value.status_code == 500
    assert "still pending" in exc_info.value.message
    assert (await results_service.get_submission(store, submission.id)).status == SubmissionStatus.pending.value
    assert await results_service.list_pupil_results(store, p1.id) == []
