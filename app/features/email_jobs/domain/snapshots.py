"""
Read-only snapshots of session and task records.

Records come from BaseQL (GraphQL over Airtable), where every relationship is
a list and unchecked checkboxes are null. The snapshots normalise that shape
once so the payload builder can stay free of record-format details.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .models import parse_timestamp

DEFAULT_DURATION_MINUTES = 60
EXCLUDED_PARTICIPANT_STATUSES = frozenset({"Cancelled", "Declined", "No-Show"})
OPEN_TASK_STATUSES = frozenset({"Not Started", "In Progress"})


def _first(value: Any) -> dict | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value if isinstance(value, dict) else None


@dataclass(slots=True)
class Contact:
    id: str
    full_name: str
    email: str | None

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Contact":
        email = (data.get("email") or "").strip()
        return cls(
            id=data.get("id", ""),
            full_name=data.get("fullName") or "",
            email=email or None,
        )


@dataclass(slots=True)
class MentorParticipant:
    contact: Contact
    role: str
    is_lead: bool


@dataclass(slots=True)
class FeedbackRecord:
    role: str | None  # "Mentor" or "Mentee"
    respondent_id: str | None


@dataclass(slots=True)
class SessionSnapshot:
    id: str
    session_type: str
    scheduled_start: datetime | None
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    status: str | None = None
    require_feedback: bool = False
    prep_submitted: bool = False
    team_name: str | None = None
    team_members: list[Contact] = field(default_factory=list)
    mentors: list[MentorParticipant] = field(default_factory=list)
    feedback: list[FeedbackRecord] = field(default_factory=list)

    @property
    def end_time(self) -> datetime | None:
        if self.scheduled_start is None:
            return None
        return self.scheduled_start + timedelta(minutes=self.duration_minutes)

    @property
    def mentor_contacts(self) -> list[Contact]:
        return [m.contact for m in self.mentors if m.contact.email]

    @property
    def lead_mentor(self) -> Contact | None:
        lead = next((m.contact for m in self.mentors if m.is_lead), None)
        return lead or (self.mentors[0].contact if self.mentors else None)

    @property
    def students(self) -> list[Contact]:
        """Team members with an email who are not mentors of this session."""
        mentor_ids = {m.contact.id for m in self.mentors}
        return [c for c in self.team_members if c.email and c.id not in mentor_ids]

    def mentor_display_name(self) -> str:
        lead = self.lead_mentor
        if lead is None:
            return "your mentor"
        name = lead.full_name or "your mentor"
        others = len(self.mentor_contacts) - 1
        if others <= 0:
            return name
        if others == 1:
            return f"{name} + 1 other mentor"
        return f"{name} + {others} other mentors"

    def has_feedback(self, role: str, contact_id: str) -> bool:
        return any(f.role == role and f.respondent_id == contact_id for f in self.feedback)

    def is_eligible_for_feedback(self, now: datetime) -> bool:
        if not self.require_feedback:
            return False
        if self.status == "Completed":
            return True
        if self.status in ("Cancelled", "No-Show"):
            return False
        return self.scheduled_start is not None and self.scheduled_start < now

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "SessionSnapshot":
        team = _first(data.get("team")) or {}
        members = []
        for member in team.get("members") or []:
            contact = _first(member.get("contact"))
            if contact:
                members.append(Contact.from_record(contact))

        feedback = []
        for item in data.get("feedback") or data.get("sessionFeedback") or []:
            respondent = _first(item.get("respondant"))
            feedback.append(
                FeedbackRecord(
                    role=item.get("role"),
                    respondent_id=respondent.get("id") if respondent else None,
                )
            )

        return cls(
            id=data["id"],
            session_type=data.get("sessionType") or "Session",
            scheduled_start=parse_timestamp(data.get("scheduledStart")),
            duration_minutes=int(data.get("duration") or DEFAULT_DURATION_MINUTES),
            status=data.get("status"),
            require_feedback=data.get("requireFeedback") is True,
            prep_submitted=bool(data.get("preMeetingSubmissions")),
            team_name=team.get("teamName"),
            team_members=members,
            mentors=_parse_mentors(data),
            feedback=feedback,
        )


def _parse_mentors(data: dict[str, Any]) -> list[MentorParticipant]:
    """Active session participants, lead first; falls back to the legacy mentor field."""
    participants = []
    for item in data.get("sessionParticipants") or []:
        if item.get("status") in EXCLUDED_PARTICIPANT_STATUSES:
            continue
        contact = _first(item.get("contact"))
        if not contact:
            continue
        role = item.get("role") or "Supporting Mentor"
        participants.append(
            MentorParticipant(
                contact=Contact.from_record(contact),
                role=role,
                is_lead=role == "Lead Mentor",
            )
        )

    if participants:
        return sorted(participants, key=lambda p: (not p.is_lead, p.contact.full_name))

    return [
        MentorParticipant(
            contact=Contact.from_record(mentor),
            role="Lead Mentor" if i == 0 else "Supporting Mentor",
            is_lead=i == 0,
        )
        for i, mentor in enumerate(data.get("mentor") or [])
    ]


@dataclass(slots=True)
class TaskSnapshot:
    id: str
    name: str
    status: str | None
    priority: str | None
    due_date: datetime | None
    assignees: list[Contact] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "TaskSnapshot":
        return cls(
            id=data["id"],
            name=data.get("name") or "Untitled task",
            status=data.get("status"),
            priority=data.get("priority"),
            due_date=parse_timestamp(data.get("dueDate")),
            assignees=[Contact.from_record(c) for c in data.get("assignedTo") or []],
        )
