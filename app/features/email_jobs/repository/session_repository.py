"""
Session and task records for notification planning.
"""

from app.features.email_jobs.domain.snapshots import SessionSnapshot, TaskSnapshot
from app.infrastructure.observability.logging import get_logger
from app.services.baseql_client import BaseQLClient

logger = get_logger(__name__)

_CONTACT_FIELDS = "id fullName email"

_SESSION_FIELDS = f"""
    id
    sessionType
    scheduledStart
    duration
    status
    requireFeedback
    preMeetingSubmissions {{ id }}
    feedback {{
      id
      role
      respondant {{ id }}
    }}
    mentor {{ {_CONTACT_FIELDS} }}
    sessionParticipants {{
      id
      role
      status
      contact {{ {_CONTACT_FIELDS} }}
    }}
    team {{
      id
      teamName
      members {{
        id
        contact {{ {_CONTACT_FIELDS} }}
      }}
    }}
"""

ALL_SESSIONS_QUERY = f"""
query AllSessions {{
  sessions(_order_by: {{ scheduledStart: "desc" }}) {{
    {_SESSION_FIELDS}
  }}
}}
"""

SESSION_BY_ID_QUERY = f"""
query SessionById($id: String!) {{
  sessions(id: $id) {{
    {_SESSION_FIELDS}
  }}
}}
"""

OPEN_TASKS_QUERY = f"""
query OpenTasks {{
  tasks(_filter: {{ status: {{ _in: ["Not Started", "In Progress"] }} }}) {{
    id
    name
    status
    priority
    dueDate
    assignedTo {{ {_CONTACT_FIELDS} }}
  }}
}}
"""


class SessionRepository:
    def __init__(self, client: BaseQLClient):
        self.client = client

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def list_sessions(self) -> list[SessionSnapshot]:
        data = await self.client.query(ALL_SESSIONS_QUERY)
        sessions = [SessionSnapshot.from_record(r) for r in data.get("sessions") or []]
        logger.debug("Sessions fetched", count=len(sessions))
        return sessions

    async def get_session(self, session_id: str) -> SessionSnapshot | None:
        data = await self.client.query(SESSION_BY_ID_QUERY, {"id": session_id})
        records = data.get("sessions") or []
        return SessionSnapshot.from_record(records[0]) if records else None

    async def list_open_tasks(self) -> list[TaskSnapshot]:
        data = await self.client.query(OPEN_TASKS_QUERY)
        return [TaskSnapshot.from_record(r) for r in data.get("tasks") or []]
