"""
Sync state and per-pass reports.

DESIGN DECISION: Connectivity and the in-progress flag are one explicit
state object, owned by the SyncProcessor and handed to whatever displays
it. There is no module-level mutable state.
"""

import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field


class SyncReport(BaseModel):
    """Outcome of one sync pass."""

    succeeded: int = 0
    failed: int = Field(default=0, description="Transient failures, still queued")
    rejected: int = Field(default=0, description="Refused by the remote store, dropped")
    deferred: int = Field(default=0, description="Waiting on unsynced records, still queued")
    rejections: list[str] = Field(
        default_factory=list,
        description="Reasons given by the remote store, for the user"
    )
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed + self.rejected + self.deferred

    @property
    def not_applied(self) -> int:
        """Entries that did not reach the remote store this pass."""
        return self.failed + self.rejected + self.deferred


class SyncState(BaseModel):
    """Everything the UI needs to show sync status."""

    is_online: bool = False
    is_syncing: bool = False
    auth_expired: bool = False
    last_report: Optional[SyncReport] = None
    last_sync: Optional[dt.datetime] = None
