"""
Email templates.

`render` is a pure function of (type, recipient, session id, metadata, app
url) and returns the HTML body and base subject line. It always sees the
true recipient; delivery overrides (subject prefix, test-mode redirect) are
applied afterwards by `apply_delivery_overrides`.
"""

from dataclasses import dataclass
from html import escape

from app.features.email_jobs.domain.models import EmailJobType, RecipientRole
from app.features.email_jobs.domain.payloads import DeliveryRecipient


class TemplateError(ValueError):
    """No template for the requested email type or missing template data."""


@dataclass(slots=True)
class RenderedEmail:
    subject: str
    html: str


_STYLES = {
    "body": "font-family:Arial,sans-serif;background:#f6f9fc;padding:24px;",
    "card": "max-width:560px;margin:0 auto;background:#ffffff;padding:32px;border-radius:8px;",
    "heading": "font-size:22px;font-weight:bold;color:#1a1a1a;margin:0 0 16px;",
    "paragraph": "font-size:15px;line-height:24px;color:#333333;",
    "button": (
        "display:inline-block;background:#2563eb;color:#ffffff;padding:12px 20px;"
        "border-radius:6px;text-decoration:none;font-weight:bold;"
    ),
    "footer": "font-size:12px;color:#8898aa;margin-top:24px;",
}


def _layout(heading: str, paragraphs: list[str], button: tuple[str, str] | None = None) -> str:
    """Paragraphs are pre-escaped HTML fragments."""
    parts = [
        f'<html><body style="{_STYLES["body"]}"><div style="{_STYLES["card"]}">',
        f'<h1 style="{_STYLES["heading"]}">{escape(heading)}</h1>',
    ]
    parts.extend(f'<p style="{_STYLES["paragraph"]}">{p}</p>' for p in paragraphs)
    if button:
        label, url = button
        parts.append(f'<p><a href="{escape(url, quote=True)}" style="{_STYLES["button"]}">{escape(label)}</a></p>')
    parts.append(
        f'<p style="{_STYLES["footer"]}">You are receiving this email because you are part of the mentorship program.</p>'
    )
    parts.append("</div></body></html>")
    return "".join(parts)


def _when(metadata: dict) -> str:
    date, time = metadata.get("sessionDate") or "", metadata.get("sessionTime") or ""
    if date and time:
        return f"{escape(date)} at {escape(time)}"
    return escape(date or time or "the scheduled time")


def _resolve_role(recipient: DeliveryRecipient, metadata: dict) -> RecipientRole:
    if recipient.role:
        return recipient.role
    if recipient.recipient_name in (metadata.get("mentorNames") or []):
        return RecipientRole.MENTOR
    return RecipientRole.STUDENT


def _other_party(role: RecipientRole, metadata: dict) -> str:
    if role is RecipientRole.STUDENT:
        names = metadata.get("mentorNames") or []
        return metadata.get("mentorName") or (names[0] if names else "your mentor")
    return metadata.get("teamName") or "the team"


def _render_prep(job_type, name, session_id, metadata, app_url) -> RenderedEmail:
    urgency = "in 2 days" if job_type is EmailJobType.PREP_48H else "tomorrow"
    session_type = escape(metadata.get("sessionType") or "Session")
    mentor = escape(metadata.get("mentorName") or (metadata.get("mentorNames") or ["your mentor"])[0])
    html = _layout(
        "Prepare for Your Session",
        [
            f"Hi {escape(name)},",
            f"Your <strong>{session_type}</strong> with {mentor} is {urgency}, on {_when(metadata)}.",
            "Submit your meeting prep to unlock the Zoom link for this session.",
        ],
        ("Submit meeting prep", f"{app_url}/sessions/{session_id}?tab=preparation"),
    )
    return RenderedEmail(f"Submit meeting prep to unlock Zoom link - session {urgency}", html)


def _render_mentor_prep(name, session_id, metadata, app_url) -> RenderedEmail:
    team = metadata.get("teamName") or "your team"
    session_type = escape(metadata.get("sessionType") or "Session")
    html = _layout(
        "Prepare for Your Session",
        [
            f"Hi {escape(name)},",
            f"Your <strong>{session_type}</strong> with {escape(team)} is tomorrow, on {_when(metadata)}.",
            "Review the team's meeting prep before the session.",
        ],
        ("View session", f"{app_url}/sessions/{session_id}?tab=preparation"),
    )
    return RenderedEmail(f"Upcoming session with {team} tomorrow", html)


def _render_feedback(job_type, recipient, session_id, metadata, app_url) -> RenderedEmail:
    role = _resolve_role(recipient, metadata)
    other = _other_party(role, metadata)
    session_type = metadata.get("sessionType") or "Session"
    name = escape(recipient.recipient_name or "there")

    if job_type is EmailJobType.FEEDBACK_FOLLOWUP:
        heading = "Quick Reminder: Share Your Feedback"
        subject = f"Reminder: Share your feedback from your {session_type} with {other}"
        lead = f"We haven't received your feedback yet for your <strong>{escape(session_type)}</strong> with {escape(other)} on {_when(metadata)}."
    else:
        heading = "How Was Your Session?"
        if role is RecipientRole.STUDENT:
            subject = f"How was your session with {other}?"
        else:
            subject = f"Quick feedback on your session with {other}"
        lead = f"Your <strong>{escape(session_type)}</strong> with {escape(other)} on {_when(metadata)} just wrapped up."

    ask = (
        "Let your mentor know what helped and what to improve next time."
        if role is RecipientRole.STUDENT
        else "A few quick notes on how the team is doing help us support them."
    )
    html = _layout(
        heading,
        [f"Hi {name},", lead, ask],
        ("Share feedback", f"{app_url}/sessions/{session_id}?tab=feedback"),
    )
    return RenderedEmail(subject, html)


def _render_digest(name, metadata, app_url) -> RenderedEmail:
    tasks = metadata.get("tasks")
    if not tasks:
        raise TemplateError("Overdue digest requires a non-empty task list")
    rows = "".join(
        f"<li><strong>{escape(t.get('name', ''))}</strong> - due {escape(str(t.get('dueDate', '')))} "
        f"({int(t.get('daysOverdue', 0))} day{'s' if int(t.get('daysOverdue', 0)) != 1 else ''} overdue, "
        f"{escape(t.get('priority') or 'Medium')} priority)</li>"
        for t in tasks
    )
    count = len(tasks)
    html = _layout(
        "Overdue Tasks Reminder",
        [
            f"Hi {escape(name)},",
            f"You have {count} overdue task{'s' if count != 1 else ''} that need attention:",
            f"<ul>{rows}</ul>",
        ],
        ("View tasks", f"{app_url}/tasks"),
    )
    return RenderedEmail(f"You have {count} overdue task{'s' if count != 1 else ''}", html)


_CHANGE_LABELS = {
    "scheduledStart": "Time",
    "duration": "Duration",
    "locationName": "Location",
    "meetingUrl": "Meeting link",
}


def _render_session_update(recipient, session_id, metadata, app_url) -> RenderedEmail:
    role = _resolve_role(recipient, metadata)
    session_type = metadata.get("sessionType") or "session"
    changes = metadata.get("changes") or {}
    items = "".join(
        f"<li>{label}: {escape(str(changes[key].get('old') or 'Not set'))} &rarr; "
        f"<strong>{escape(str(changes[key].get('new') or 'Not set'))}</strong></li>"
        for key, label in _CHANGE_LABELS.items()
        if isinstance(changes.get(key), dict)
    )
    paragraphs = [
        f"Hi {escape(recipient.recipient_name or 'there')},",
        f"Your <strong>{escape(session_type)}</strong> with {escape(_other_party(role, metadata))} has been updated. "
        "Please review the changes below.",
    ]
    if items:
        paragraphs.append(f"<ul>{items}</ul>")
    paragraphs.append(f"Updated time: {_when(metadata)}")
    html = _layout("Session Updated", paragraphs, ("View session", f"{app_url}/sessions/{session_id}"))
    return RenderedEmail(f"Your {session_type} has been updated", html)


def render(
    job_type: EmailJobType,
    recipient: DeliveryRecipient,
    session_id: str | None,
    metadata: dict,
    app_url: str,
) -> RenderedEmail:
    """Render the email body and base subject for one recipient."""
    name = recipient.recipient_name or "there"

    if job_type in (EmailJobType.PREP_48H, EmailJobType.PREP_24H):
        return _render_prep(job_type, name, session_id, metadata, app_url)
    if job_type is EmailJobType.MENTOR_PREP:
        return _render_mentor_prep(name, session_id, metadata, app_url)
    if job_type in (
        EmailJobType.FEEDBACK,
        EmailJobType.FEEDBACK_IMMEDIATE,
        EmailJobType.FEEDBACK_FOLLOWUP,
    ):
        return _render_feedback(job_type, recipient, session_id, metadata, app_url)
    if job_type is EmailJobType.TASK_OVERDUE_DIGEST:
        return _render_digest(name, metadata, app_url)
    if job_type is EmailJobType.SESSION_UPDATE:
        return _render_session_update(recipient, session_id, metadata, app_url)
    raise TemplateError(f"Unknown email type: {job_type}")


def apply_delivery_overrides(
    rendered: RenderedEmail,
    true_recipient: str,
    *,
    subject_prefix: str = "",
    test_mode: bool = False,
    test_recipient: str | None = None,
) -> tuple[str, str]:
    """
    Returns (address to send to, final subject).

    In test mode every email goes to the test recipient and the subject names
    who it was meant for.
    """
    subject = f"{subject_prefix}{rendered.subject}"
    if test_mode and test_recipient:
        return test_recipient, f"{subject} (to: {true_recipient})"
    return true_recipient, subject


PREVIEW_SESSION_ID = "sample-session-id"

_PREVIEW_BASE = {
    "sessionType": "Weekly Check-in",
    "mentorName": "John Smith",
    "mentorNames": ["John Smith"],
    "teamName": "Team Alpha",
    "sessionDate": "Monday, January 15, 2025",
    "sessionTime": "2:00 PM",
}

_PREVIEW_EXTRA = {
    EmailJobType.TASK_OVERDUE_DIGEST: {
        "tasks": [
            {"name": "Draft project proposal", "dueDate": "2025-01-10", "daysOverdue": 5, "priority": "High"},
            {"name": "Upload meeting notes", "dueDate": "2025-01-14", "daysOverdue": 1, "priority": "Medium"},
        ]
    },
    EmailJobType.SESSION_UPDATE: {
        "changes": {
            "scheduledStart": {"old": "Monday, January 15, 2025 1:00 PM", "new": "Monday, January 15, 2025 2:00 PM"},
            "duration": {"old": 60, "new": 90},
        }
    },
}


def render_preview(job_type: EmailJobType, app_url: str) -> tuple[RenderedEmail, dict]:
    """Render `job_type` for a sample student. Returns (email, sample data used)."""
    sample = {**_PREVIEW_BASE, **_PREVIEW_EXTRA.get(job_type, {})}
    recipient = DeliveryRecipient(
        job_id="preview",
        to="jane.doe@example.com",
        recipient_name="Jane Doe",
        role=RecipientRole.STUDENT,
    )
    return render(job_type, recipient, PREVIEW_SESSION_ID, sample, app_url), sample
