"""
Notification payload builder.

Pure functions: given session/task snapshots and `now`, decide which
notifications are due and build fully denormalised payloads for them.
Records missing a start time, due date or recipient email are skipped.

Windows are in hours and inclusive on both ends.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

from app.features.email_jobs.domain.models import EmailJobType, RecipientRole
from app.features.email_jobs.domain.payloads import NotificationPayload
from app.features.email_jobs.domain.snapshots import Contact, SessionSnapshot, TaskSnapshot
from app.features.email_jobs.domain.timefmt import (
    MAX_SCHEDULE_DAYS,
    format_session_date,
    format_session_time,
    hours_between,
    is_valid_schedule_time,
)

PREP_24H_WINDOW = (20.0, 28.0)
PREP_48H_WINDOW = (44.0, 52.0)
FEEDBACK_IMMEDIATE_WINDOW = (0.0, 2.0)
FEEDBACK_FOLLOWUP_WINDOW = (20.0, 28.0)

NO_FEEDBACK_STATUSES = frozenset({"Cancelled", "No-Show"})
DIGEST_SESSION_NAME = "Overdue tasks"


def _in_window(hours: float, window: tuple[float, float]) -> bool:
    low, high = window
    return low <= hours <= high


def session_metadata(session: SessionSnapshot) -> dict:
    """Template data shared by every email about one session."""
    metadata = {
        "sessionType": session.session_type,
        "teamName": session.team_name or "the team",
        "mentorNames": [m.full_name or "Mentor" for m in session.mentor_contacts],
        "mentorName": session.mentor_display_name(),
    }
    if session.scheduled_start is not None:
        metadata["sessionDate"] = format_session_date(session.scheduled_start)
        metadata["sessionTime"] = format_session_time(session.scheduled_start)
    return metadata


def _payload(
    session: SessionSnapshot,
    job_type: EmailJobType,
    contact: Contact,
    role: RecipientRole,
    scheduled_for: datetime,
    **extra,
) -> NotificationPayload:
    return NotificationPayload(
        type=job_type,
        session_id=session.id,
        session_name=session.session_type,
        recipient_email=contact.email,
        recipient_name=contact.full_name or "there",
        contact_id=contact.id,
        scheduled_for=scheduled_for,
        role=role,
        metadata={**session_metadata(session), **extra},
    )


def build_pre_meeting_reminders(
    sessions: Iterable[SessionSnapshot], now: datetime
) -> list[NotificationPayload]:
    """
    24h/48h prep reminders for non-mentor team members.

    The 24h window is checked first so a recipient never gets both. Teams
    that already submitted pre-meeting prep get nothing.
    """
    payloads = []
    for session in sessions:
        if session.scheduled_start is None or session.prep_submitted:
            continue

        hours_until_start = hours_between(now, session.scheduled_start)
        if _in_window(hours_until_start, PREP_24H_WINDOW):
            job_type, lead = EmailJobType.PREP_24H, 24
        elif _in_window(hours_until_start, PREP_48H_WINDOW):
            job_type, lead = EmailJobType.PREP_48H, 48
        else:
            continue

        for student in session.students:
            payloads.append(
                _payload(
                    session,
                    job_type,
                    student,
                    RecipientRole.STUDENT,
                    now,
                    hoursUntilSession=lead,
                )
            )
    return payloads


def build_feedback_reminders(
    sessions: Iterable[SessionSnapshot], now: datetime
) -> list[NotificationPayload]:
    """
    Immediate (0-2h after end) and follow-up (20-28h after end) feedback
    reminders for every mentor and team member who has not yet submitted
    feedback for their own role.
    """
    payloads = []
    for session in sessions:
        end = session.end_time
        if end is None or not session.is_eligible_for_feedback(now):
            continue

        hours_since_end = hours_between(end, now)
        if _in_window(hours_since_end, FEEDBACK_IMMEDIATE_WINDOW):
            job_type = EmailJobType.FEEDBACK_IMMEDIATE
        elif _in_window(hours_since_end, FEEDBACK_FOLLOWUP_WINDOW):
            job_type = EmailJobType.FEEDBACK_FOLLOWUP
        else:
            continue

        for mentor in session.mentor_contacts:
            if session.has_feedback("Mentor", mentor.id):
                continue
            payloads.append(_payload(session, job_type, mentor, RecipientRole.MENTOR, now))

        for student in session.students:
            if session.has_feedback("Mentee", student.id):
                continue
            payloads.append(_payload(session, job_type, student, RecipientRole.STUDENT, now))
    return payloads


def build_overdue_task_digests(
    tasks: Iterable[TaskSnapshot], now: datetime
) -> list[NotificationPayload]:
    """One digest per assignee, tasks sorted by days overdue (most overdue first)."""
    grouped: dict[str, tuple[Contact, list[TaskSnapshot]]] = {}
    for task in tasks:
        if not task.is_open or task.due_date is None or task.due_date >= now:
            continue
        for assignee in task.assignees:
            if not assignee.email:
                continue
            key = assignee.email.lower()
            grouped.setdefault(key, (assignee, []))[1].append(task)

    payloads = []
    for contact, overdue in grouped.values():
        items = sorted(
            (
                {
                    "id": t.id,
                    "name": t.name,
                    "dueDate": format_session_date(t.due_date),
                    "daysOverdue": (now - t.due_date).days,
                    "priority": t.priority or "Medium",
                }
                for t in overdue
            ),
            key=lambda item: item["daysOverdue"],
            reverse=True,
        )
        payloads.append(
            NotificationPayload(
                type=EmailJobType.TASK_OVERDUE_DIGEST,
                session_id=None,
                session_name=DIGEST_SESSION_NAME,
                recipient_email=contact.email,
                recipient_name=contact.full_name or "there",
                contact_id=contact.id,
                scheduled_for=now,
                metadata={"tasks": items},
            )
        )
    return payloads


def build_due_notifications(
    sessions: Iterable[SessionSnapshot], tasks: Iterable[TaskSnapshot], now: datetime
) -> list[NotificationPayload]:
    """Everything the daily run should send right now."""
    sessions = list(sessions)
    return [
        *build_pre_meeting_reminders(sessions, now),
        *build_feedback_reminders(sessions, now),
        *build_overdue_task_digests(tasks, now),
    ]


def plan_session_notifications(
    session: SessionSnapshot, now: datetime, max_days: int = MAX_SCHEDULE_DAYS
) -> list[NotificationPayload]:
    """
    Future deliveries for one session, each at its own send time:

        prep48h            start - 48h  (team members)
        prep24h            start - 24h  (team members)
        mentorPrep         start - 24h  (mentors)
        feedbackImmediate  end          (team members and mentors)

    Times in the past or more than `max_days` ahead are dropped.
    """
    start, end = session.scheduled_start, session.end_time
    if start is None or end is None:
        return []

    def valid(when: datetime) -> bool:
        return is_valid_schedule_time(when, now, max_days)

    payloads = []
    prep_48h, prep_24h = start - timedelta(hours=48), start - timedelta(hours=24)

    if not session.prep_submitted:
        for student in session.students:
            if valid(prep_48h):
                payloads.append(
                    _payload(session, EmailJobType.PREP_48H, student, RecipientRole.STUDENT, prep_48h, hoursUntilSession=48)
                )
            if valid(prep_24h):
                payloads.append(
                    _payload(session, EmailJobType.PREP_24H, student, RecipientRole.STUDENT, prep_24h, hoursUntilSession=24)
                )

    if valid(prep_24h):
        for mentor in session.mentor_contacts:
            payloads.append(
                _payload(session, EmailJobType.MENTOR_PREP, mentor, RecipientRole.MENTOR, prep_24h, hoursUntilSession=24)
            )

    if session.status not in NO_FEEDBACK_STATUSES and valid(end):
        for student in session.students:
            payloads.append(
                _payload(session, EmailJobType.FEEDBACK_IMMEDIATE, student, RecipientRole.STUDENT, end)
            )
        for mentor in session.mentor_contacts:
            payloads.append(
                _payload(session, EmailJobType.FEEDBACK_IMMEDIATE, mentor, RecipientRole.MENTOR, end)
            )

    return payloads


def build_session_update_notifications(
    session: SessionSnapshot,
    recipient_contact_ids: Iterable[str],
    changes: dict,
    now: datetime,
) -> list[NotificationPayload]:
    """Immediate 'session updated' emails for the selected participants."""
    selected = set(recipient_contact_ids)
    participants = [(m, RecipientRole.MENTOR) for m in session.mentor_contacts] + [
        (s, RecipientRole.STUDENT) for s in session.students
    ]
    return [
        _payload(session, EmailJobType.SESSION_UPDATE, contact, role, now, changes=changes)
        for contact, role in participants
        if contact.id in selected and contact.email
    ]
