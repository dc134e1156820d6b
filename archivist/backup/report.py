"""
Outcome records for archive runs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from archivist.utils.formatting import format_size


STATUS_RUNNING = 'running'
STATUS_SUCCESS = 'success'
STATUS_PARTIAL = 'partial'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'


@dataclass
class DestinationOutcome:
    destination_id: str
    kind: str
    success: bool
    location: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class ArchiveOutcome:
    """Result of one archive pipeline run."""
    archive: str
    name: Optional[str] = None
    file_name: Optional[str] = None
    status: str = STATUS_RUNNING
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    file_size_bytes: Optional[int] = None
    destinations: List[DestinationOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def failed_destinations(self) -> List[str]:
        return [d.destination_id for d in self.destinations if not d.success]

    @property
    def delivered_destinations(self) -> List[str]:
        return [d.destination_id for d in self.destinations if d.success]

    def describe(self) -> str:
        label = self.name or self.archive
        if self.status == STATUS_SUCCESS:
            size = format_size(self.file_size_bytes or 0)
            return f"{label}: success ({size}, {len(self.destinations)} destination(s))"
        if self.status == STATUS_PARTIAL:
            failed = ', '.join(self.failed_destinations)
            return f"{label}: partial (failed destinations: {failed})"
        if self.status == STATUS_CANCELLED:
            return f"{label}: cancelled"
        stage = f" during {self.failed_stage}" if self.failed_stage else ''
        return f"{label}: failed{stage}: {self.error}"


@dataclass
class RunReport:
    """Aggregated outcome of every archive in a run."""
    run_id: str
    archives: List[ArchiveOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return all(a.success for a in self.archives)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def outcome(self, archive: str) -> Optional[ArchiveOutcome]:
        """Find an outcome by archive template or rendered name."""
        for outcome in self.archives:
            if archive in (outcome.archive, outcome.name):
                return outcome
        return None

    def summary_lines(self) -> List[str]:
        succeeded = sum(1 for a in self.archives if a.success)
        lines = [f"Run {self.run_id}: {succeeded}/{len(self.archives)} archives succeeded"]
        lines.extend(f"  {outcome.describe()}" for outcome in self.archives)
        return lines
