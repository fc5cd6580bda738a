from datetime import timedelta

import pytest

from slotpilot.config import RecallSettings
from slotpilot.domain import (
    AppointmentStatus,
    BatchOutcome,
    CompletionReason,
    EnrollmentStatus,
    PatientResponse,
    RecallStep,
    RecallStepType,
)
from slotpilot.errors import ConflictError, NotFoundError, ValidationError
from slotpilot.recall import RecallEngine

from conftest import at


STEPS = [
    RecallStep(1, RecallStepType.EMAIL, 0, 'recall-email'),
    RecallStep(2, RecallStepType.SMS, 3, 'recall-sms'),
    RecallStep(3, RecallStepType.CALL, 7, 'recall-call'),
]


@pytest.fixture
def lapsed_history(history, make_appointment, now):
    def visit(appointment_id, patient_id, days_ago, **extra):
        day = (now - timedelta(days=days_ago)).date()
        history.add_appointment(
            make_appointment(
                appointment_id,
                patient_id,
                'prov-c',
                at(day, 9),
                status=extra.pop('status', AppointmentStatus.COMPLETED),
                appointment_type_id=extra.pop('appointment_type_id', 'type-follow'),
            )
        )

    visit('old-1', 'pat-lapsed-1', 400)
    visit('old-2', 'pat-lapsed-2', 200)
    visit('old-3', 'pat-recent', 30)
    visit('old-4', 'pat-booked', 400)
    visit('old-5', 'pat-other-type', 400, appointment_type_id='type-new')
    history.add_appointment(make_appointment('future-booked', 'pat-booked', 'prov-a', at(now.date() + timedelta(days=3), 14)))
    return history


@pytest.fixture
def recall(lapsed_history):
    return RecallEngine(lapsed_history, RecallSettings())


@pytest.fixture
def sequence(recall):
    return recall.create_sequence(
        'Annual follow-up',
        STEPS,
        days_since_last_visit=180,
        appointment_types=['type-follow'],
        max_attempts=3,
        sequence_id='seq-annual',
    )


def test_sequence_steps_are_validated(recall):
    with pytest.raises(ValidationError):
        recall.create_sequence('Gappy', [STEPS[0], STEPS[2]], days_since_last_visit=90)
    with pytest.raises(ValidationError):
        recall.create_sequence('Empty', [], days_since_last_visit=90)
    with pytest.raises(ValidationError):
        recall.create_sequence(' ', STEPS, days_since_last_visit=90)
    backwards = [RecallStep(1, RecallStepType.SMS, 5), RecallStep(2, RecallStepType.SMS, 2)]
    with pytest.raises(ValidationError):
        recall.create_sequence('Backwards', backwards, days_since_last_visit=90)


def test_sequence_defaults_and_listing(recall, sequence):
    other = recall.create_sequence('Default attempts', STEPS[:1], days_since_last_visit=30)
    assert other.max_attempts == RecallSettings().default_max_attempts
    assert sequence.steps.last_step_number == 3
    assert [item.id for item in recall.get_sequences()] == sorted([sequence.id, other.id])

    recall.deactivate_sequence(other.id)
    assert [item.id for item in recall.get_sequences(active_only=True)] == [sequence.id]


def test_find_candidates(recall, sequence, now):
    candidates = recall.find_candidates(sequence.id, now=now)

    assert [candidate.patient_id for candidate in candidates] == ['pat-lapsed-1', 'pat-lapsed-2']
    assert candidates[0].days_since_last_visit == 400
    assert candidates[0].eligible_sequences == (sequence.id,)

    recall.enroll('pat-lapsed-1', sequence.id, now=now)
    assert [c.patient_id for c in recall.find_candidates(sequence.id, now=now)] == ['pat-lapsed-2']


def test_enroll_is_idempotent(recall, sequence, now):
    first = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    second = recall.enroll('pat-lapsed-1', sequence.id, now=now + timedelta(hours=1))

    assert second.id == first.id
    assert len(recall.store.enrollments()) == 1


def test_batch_enroll_reports_per_item(recall, sequence, now):
    recall.enroll('pat-lapsed-1', sequence.id, now=now)
    result = recall.batch_enroll(['pat-lapsed-1', 'pat-lapsed-2', 'pat-lapsed-2'], sequence.id, now=now)

    assert [item.outcome for item in result.items] == [
        BatchOutcome.SKIPPED,
        BatchOutcome.SUCCESS,
        BatchOutcome.SKIPPED,
    ]
    assert len(recall.store.enrollments()) == 2

    missing = recall.batch_enroll(['pat-lapsed-1'], 'seq-missing', now=now)
    assert missing.counts() == {'success': 0, 'skipped': 0, 'error': 1}


def test_inactive_sequence_rejects_enrollment(recall, sequence, now):
    recall.deactivate_sequence(sequence.id)
    with pytest.raises(ConflictError):
        recall.enroll('pat-lapsed-1', sequence.id, now=now)
    with pytest.raises(NotFoundError):
        recall.enroll('pat-lapsed-1', 'seq-missing', now=now)


def test_deactivated_sequence_returns_active_enrollment(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.deactivate_sequence(sequence.id)

    again = recall.enroll('pat-lapsed-1', sequence.id, now=now + timedelta(hours=1))
    assert again is enrollment
    result = recall.batch_enroll(['pat-lapsed-1', 'pat-lapsed-2'], sequence.id, now=now)
    assert [item.outcome for item in result.items] == [BatchOutcome.SKIPPED, BatchOutcome.ERROR]


def test_pending_steps_follow_offsets(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)

    pending = recall.get_pending_steps(now=now)
    assert [(intent.enrollment_id, intent.step_number) for intent in pending] == [(enrollment.id, 1)]
    assert pending[0].step_type is RecallStepType.EMAIL
    assert pending[0].content_ref == 'recall-email'

    recall.record_step_execution(enrollment.id, 1, True, now=now)
    assert recall.get_pending_steps(now=now + timedelta(days=2)) == []
    due = recall.get_pending_steps(now=now + timedelta(days=3))
    assert [(intent.step_number, intent.due_at) for intent in due] == [(2, now + timedelta(days=3))]


def test_step_advancement_is_idempotent(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)

    recall.record_step_execution(enrollment.id, 1, True, now=now)
    recall.record_step_execution(enrollment.id, 1, True, now=now + timedelta(minutes=5))

    assert enrollment.current_step_number == 2
    assert len(recall.store.executions(enrollment.id)) == 1
    with pytest.raises(ConflictError):
        recall.record_step_execution(enrollment.id, 3, True, now=now)


def test_failures_retry_after_cooldown(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.record_step_execution(enrollment.id, 1, False, now=now, error='smtp timeout')

    assert enrollment.current_step_number == 1
    assert enrollment.attempts == 1
    assert recall.get_pending_steps(now=now + timedelta(hours=1)) == []
    retry = recall.get_pending_steps(now=now + timedelta(hours=24))
    assert [(intent.step_number, intent.attempt) for intent in retry] == [(1, 2)]


def test_exhausting_attempts_completes_with_failure(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    for attempt in range(3):
        recall.record_step_execution(enrollment.id, 1, False, now=now + timedelta(days=attempt))

    assert enrollment.status is EnrollmentStatus.COMPLETED
    assert enrollment.failed is True
    assert enrollment.completion_reason is CompletionReason.MAX_ATTEMPTS
    assert recall.get_pending_steps(now=now + timedelta(days=10)) == []
    with pytest.raises(ConflictError):
        recall.record_step_execution(enrollment.id, 1, False, now=now + timedelta(days=4))


def test_all_steps_complete_without_response(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    for step in STEPS:
        recall.record_step_execution(enrollment.id, step.step_number, True, now=now + timedelta(days=step.days_from_start))

    assert enrollment.status is EnrollmentStatus.COMPLETED
    assert enrollment.failed is False
    assert enrollment.completion_reason is CompletionReason.NO_RESPONSE
    # replaying the final step after completion is harmless
    recall.record_step_execution(enrollment.id, 3, True, now=now + timedelta(days=8))


def test_scheduled_response_terminates(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.record_step_execution(enrollment.id, 1, True, now=now)

    recall.handle_patient_response(enrollment.id, PatientResponse.SCHEDULED, now=now + timedelta(days=1))

    assert enrollment.status is EnrollmentStatus.SCHEDULED
    assert enrollment.scheduled_at == now + timedelta(days=1)
    assert recall.get_pending_steps(now=now + timedelta(days=5)) == []
    with pytest.raises(ConflictError):
        recall.record_step_execution(enrollment.id, 2, True, now=now + timedelta(days=3))
    with pytest.raises(ConflictError):
        recall.handle_patient_response(enrollment.id, PatientResponse.OPTED_OUT, now=now)

    again = recall.enroll('pat-lapsed-1', sequence.id, now=now + timedelta(days=2))
    assert again.id != enrollment.id


def test_opt_out_and_no_response(recall, sequence, now):
    first = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    second = recall.enroll('pat-lapsed-2', sequence.id, now=now)

    recall.handle_patient_response(first.id, PatientResponse.OPTED_OUT, now=now)
    recall.handle_patient_response(second.id, PatientResponse.NO_RESPONSE, now=now)

    assert first.status is EnrollmentStatus.OPTED_OUT
    assert second.status is EnrollmentStatus.ACTIVE
    assert second.response is PatientResponse.NO_RESPONSE


def test_scheduled_response_terminates_without_stop_on_schedule(recall, now):
    sequence = recall.create_sequence(
        'Keep nudging', STEPS, days_since_last_visit=180, stop_on_schedule=False
    )
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.handle_patient_response(enrollment.id, PatientResponse.SCHEDULED, now=now)

    assert enrollment.status is EnrollmentStatus.SCHEDULED
    assert enrollment.scheduled_at == enrollment.completed_at == now
    assert recall.get_pending_steps(now=now + timedelta(days=5)) == []
    assert recall.store.active_enrollment('pat-lapsed-1', sequence.id) is None


def test_observed_booking_stops_only_stop_on_schedule_sequences(recall, lapsed_history, make_appointment, sequence, now):
    relaxed = recall.create_sequence(
        'Keep nudging', STEPS, days_since_last_visit=180, stop_on_schedule=False
    )
    stopping = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    continuing = recall.enroll('pat-lapsed-1', relaxed.id, now=now)
    booked_at = now + timedelta(hours=2)
    lapsed_history.add_appointment(
        make_appointment('rebooked', 'pat-lapsed-1', 'prov-a', at(now.date() + timedelta(days=10), 10), booked_at=booked_at)
    )

    later = now + timedelta(hours=3)
    pending = recall.get_pending_steps(now=later)
    assert [intent.enrollment_id for intent in pending] == [continuing.id]

    closed = recall.close_scheduled(now=later)
    assert [item.id for item in closed] == [stopping.id]
    assert stopping.status is EnrollmentStatus.SCHEDULED
    assert stopping.completion_reason is CompletionReason.BOOKING_OBSERVED
    assert stopping.scheduled_at == booked_at
    assert continuing.status is EnrollmentStatus.ACTIVE
    assert recall.close_scheduled(now=later) == []


def test_bookings_made_before_enrolling_do_not_stop_sequence(recall, lapsed_history, make_appointment, sequence, now):
    lapsed_history.add_appointment(
        make_appointment(
            'booked-early',
            'pat-lapsed-2',
            'prov-a',
            at(now.date() + timedelta(days=10), 10),
            booked_at=now - timedelta(days=1),
        )
    )
    enrollment = recall.enroll('pat-lapsed-2', sequence.id, now=now)

    assert [intent.enrollment_id for intent in recall.get_pending_steps(now=now)] == [enrollment.id]
    assert recall.close_scheduled(now=now) == []


def test_update_sequence_guards_active_enrollments(recall, sequence, now):
    enrollment = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.record_step_execution(enrollment.id, 1, True, now=now)
    recall.record_step_execution(enrollment.id, 2, True, now=now + timedelta(days=3))

    with pytest.raises(ConflictError):
        recall.update_sequence(sequence.id, steps=STEPS[:2])
    with pytest.raises(ValidationError):
        recall.update_sequence(sequence.id, colour='blue')

    updated = recall.update_sequence(sequence.id, name='Annual check-in', max_attempts=5)
    assert updated.name == 'Annual check-in'
    assert updated.max_attempts == 5
    assert len(updated.steps) == 3


def test_statistics(recall, sequence, now):
    first = recall.enroll('pat-lapsed-1', sequence.id, now=now)
    recall.enroll('pat-lapsed-2', sequence.id, now=now)
    recall.handle_patient_response(first.id, PatientResponse.SCHEDULED, now=now)

    stats = recall.statistics()
    assert stats.total == 2
    assert stats.active == 1
    assert stats.scheduled == 1
    assert stats.success_rate == 0.5
    assert stats.by_sequence[0].sequence_name == 'Annual follow-up'


def test_recall_insights(lapsed_history, now):
    recall = RecallEngine(
        lapsed_history,
        RecallSettings(low_success_min_enrollments=2, candidate_insight_threshold=2),
    )
    sequence = recall.create_sequence('Lapsed', STEPS, days_since_last_visit=180, appointment_types=['type-follow'])

    before = {insight.title for insight in recall.generate_recall_insights(now=now)}
    assert 'Patients Due for Recall' in before

    recall.batch_enroll(['pat-lapsed-1', 'pat-lapsed-2'], sequence.id, now=now)
    later = now + timedelta(days=8)
    insights = {insight.title: insight for insight in recall.generate_recall_insights(now=later)}

    assert 'Patients Due for Recall' not in insights
    assert insights['Low Success: Lapsed'].priority == 7
    assert len(insights['Stalled Recall Enrollments'].data['enrollment_ids']) == 2
