"""
Repository layer for email jobs.
"""

from .job_store import JobStore
from .session_repository import SessionRepository

__all__ = ["JobStore", "SessionRepository"]
