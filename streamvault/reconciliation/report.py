"""Structured health report produced by a reconciliation run."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from streamvault.core.errors import IntegrityError


@dataclass(frozen=True)
class HealthCheck:
    name: str
    healthy: bool
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    checks: List[HealthCheck] = field(default_factory=list)
    refreshed: int = 0
    stuck_found: int = 0
    stuck_recovered: int = 0
    stuck_marked_error: int = 0
    local_orphans: int = 0
    remote_orphans: int = 0
    remote_errors: int = 0
    skipped_locked: int = 0
    issues: List[IntegrityError] = field(default_factory=list)

    @property
    def healthy_checks(self) -> int:
        return sum(1 for check in self.checks if check.healthy)

    @property
    def unhealthy_checks(self) -> int:
        return sum(1 for check in self.checks if not check.healthy)

    @property
    def orphan_count(self) -> int:
        return self.local_orphans + self.remote_orphans

    @property
    def has_issues(self) -> bool:
        return bool(self.issues) or self.unhealthy_checks > 0

    @property
    def healthy(self) -> bool:
        return not self.has_issues

    def add_issue(self, issue: IntegrityError) -> None:
        self.issues.append(issue)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "healthy": self.healthy,
            "checks": {
                check.name: {"healthy": check.healthy, "detail": check.detail, **check.data}
                for check in self.checks
            },
            "healthy_checks": self.healthy_checks,
            "unhealthy_checks": self.unhealthy_checks,
            "refreshed": self.refreshed,
            "stuck": {
                "found": self.stuck_found,
                "recovered": self.stuck_recovered,
                "marked_error": self.stuck_marked_error,
            },
            "orphans": {
                "local": self.local_orphans,
                "remote": self.remote_orphans,
                "total": self.orphan_count,
            },
            "remote_errors": self.remote_errors,
            "skipped_locked": self.skipped_locked,
            "issues": [issue.as_dict() for issue in self.issues],
        }
