"""
Email jobs API request models.
Bodies are camelCase JSON; snake_case field names are accepted too.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScheduleRequest(CamelModel):
    """Schedule emails for one session, several sessions, or every session."""

    session_id: str | None = Field(None, description="Single session to schedule")
    session_ids: list[str] | None = Field(None, description="Several sessions to schedule")
    all: bool = Field(default=False, description="Schedule every session with a future start")
    force: bool = Field(default=False, description="Cancel live jobs and reschedule")
    dry_run: bool = Field(default=False, description="Report what would be scheduled without writing")
    created_by: str | None = Field(None, description="User id recorded on created batches")

    @model_validator(mode="after")
    def exactly_one_target(self) -> "ScheduleRequest":
        targets = [bool(self.session_id), bool(self.session_ids), self.all]
        if sum(targets) != 1:
            raise ValueError("Provide exactly one of sessionId, sessionIds or all=true")
        return self


class SessionUpdateRequest(CamelModel):
    """Notify selected participants that a session changed."""

    session_id: str = Field(..., description="Session that changed")
    recipient_ids: list[str] = Field(..., min_length=1, description="Contact ids to notify")
    changes: dict[str, Any] = Field(
        default_factory=dict,
        description="Changed fields, e.g. {'scheduledStart': {'old': ..., 'new': ...}}",
    )
    created_by: str | None = Field(None, description="User id recorded on the batch")


class RetryFailedRequest(CamelModel):
    batch_id: str | None = Field(None, description="Retry failed jobs of this batch")
    session_id: str | None = Field(None, description="Retry failed jobs of this session")

    @model_validator(mode="after")
    def exactly_one_scope(self) -> "RetryFailedRequest":
        if bool(self.batch_id) == bool(self.session_id):
            raise ValueError("Provide exactly one of batchId or sessionId")
        return self
