"""Records shared between the health checker, the history store, the rollback
coordinator and the monitoring loop.

Every record serializes to the camelCase JSON shape used by the state files
(``deployment-history.json``, ``rollback-history.json``,
``monitoring-metrics.json``) and parses back with ``from_dict``. Parsing is
strict about required fields: a missing or mistyped required field raises
``ValueError`` so callers can drop the entry instead of carrying half a record
around. Optional fields default explicitly.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    QA = "qa"
    PRE_PRODUCTION = "pre-production"
    PRODUCTION = "production"


class DeploymentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class RollbackStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RollbackPhase(str, Enum):
    REQUESTED = "requested"
    PRE_CHECKED = "pre-checked"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ERROR = "error"


class AlertType(str, Enum):
    AVAILABILITY = "availability"
    PERFORMANCE = "performance"
    ERRORS = "errors"
    SYSTEM = "system"


class Severity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


ALERT_SEVERITY: dict[AlertType, Severity] = {
    AlertType.AVAILABILITY: Severity.CRITICAL,
    AlertType.PERFORMANCE: Severity.WARNING,
    AlertType.ERRORS: Severity.ERROR,
    AlertType.SYSTEM: Severity.CRITICAL,
}


def severity_for(alert_type: AlertType | str) -> Severity:
    try:
        return ALERT_SEVERITY[AlertType(alert_type)]
    except ValueError:
        return Severity.INFO


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("timestamp is required")
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    """Time-ordered id with a random suffix, e.g. ``dep-1718000000000-3f9a1c2b7``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class DeploymentRecord:
    id: str
    timestamp: datetime
    environment: Environment
    version: str
    url: str
    status: DeploymentStatus = DeploymentStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == DeploymentStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_ts(self.timestamp),
            "environment": self.environment.value,
            "version": self.version,
            "url": self.url,
            "status": self.status.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentRecord:
        if not isinstance(data, dict):
            raise ValueError("deployment record must be a mapping")
        metadata = data.get("metadata")
        return cls(
            id=_require_str(data, "id"),
            timestamp=parse_ts(data.get("timestamp")),
            environment=Environment(data.get("environment")),
            version=_require_str(data, "version"),
            url=str(data.get("url") or ""),
            status=DeploymentStatus(data.get("status") or DeploymentStatus.INACTIVE.value),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class VersionRef:
    version: str
    deployment_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "deploymentId": self.deployment_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionRef:
        if not isinstance(data, dict):
            raise ValueError("version reference must be a mapping")
        return cls(version=_require_str(data, "version"), deployment_id=_require_str(data, "deploymentId"))


@dataclass
class RollbackStep:
    name: str
    description: str
    timestamp: datetime
    status: StepStatus = StepStatus.IN_PROGRESS
    completed_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "step": self.name,
            "description": self.description,
            "timestamp": format_ts(self.timestamp),
            "status": self.status.value,
        }
        if self.completed_at is not None:
            out["completedAt"] = format_ts(self.completed_at)
        if self.error:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackStep:
        completed_at = data.get("completedAt")
        return cls(
            name=_require_str(data, "step"),
            description=str(data.get("description") or ""),
            timestamp=parse_ts(data.get("timestamp")),
            status=StepStatus(data.get("status") or StepStatus.IN_PROGRESS.value),
            completed_at=parse_ts(completed_at) if completed_at else None,
            error=data.get("error") or None,
        )


@dataclass
class BackupSnapshot:
    """Pre-rollback copy of the live deployment record and its config files.

    ``files`` maps a path to its verbatim content, or to ``None`` when the
    file did not exist at backup time (restore removes it again).
    """

    id: str
    timestamp: datetime
    deployment: DeploymentRecord
    files: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_ts(self.timestamp),
            "deployment": self.deployment.to_dict(),
            "files": dict(self.files),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupSnapshot:
        files = data.get("files")
        return cls(
            id=_require_str(data, "id"),
            timestamp=parse_ts(data.get("timestamp")),
            deployment=DeploymentRecord.from_dict(data.get("deployment")),
            files={str(k): (v if isinstance(v, str) else None) for k, v in (files or {}).items()},
        )


@dataclass
class RollbackRecord:
    id: str
    timestamp: datetime
    environment: Environment
    reason: str
    from_ref: VersionRef
    to_ref: VersionRef
    status: RollbackStatus = RollbackStatus.IN_PROGRESS
    phase: RollbackPhase = RollbackPhase.REQUESTED
    steps: list[RollbackStep] = field(default_factory=list)
    duration_ms: float | None = None
    backup: BackupSnapshot | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.from_ref.version == self.to_ref.version:
            raise ValueError(f"rollback source and target are both version {self.to_ref.version}")

    @property
    def is_terminal(self) -> bool:
        return self.status in (RollbackStatus.COMPLETED, RollbackStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "timestamp": format_ts(self.timestamp),
            "environment": self.environment.value,
            "reason": self.reason,
            "from": self.from_ref.to_dict(),
            "to": self.to_ref.to_dict(),
            "status": self.status.value,
            "phase": self.phase.value,
            "steps": [s.to_dict() for s in self.steps],
            "duration": self.duration_ms,
            "warnings": list(self.warnings),
        }
        if self.backup is not None:
            out["backup"] = self.backup.to_dict()
        if self.error:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackRecord:
        if not isinstance(data, dict):
            raise ValueError("rollback record must be a mapping")
        backup = data.get("backup")
        return cls(
            id=_require_str(data, "id"),
            timestamp=parse_ts(data.get("timestamp")),
            environment=Environment(data.get("environment")),
            reason=_require_str(data, "reason"),
            from_ref=VersionRef.from_dict(data.get("from")),
            to_ref=VersionRef.from_dict(data.get("to")),
            status=RollbackStatus(data.get("status") or RollbackStatus.IN_PROGRESS.value),
            phase=RollbackPhase(data.get("phase") or RollbackPhase.REQUESTED.value),
            steps=[RollbackStep.from_dict(s) for s in (data.get("steps") or [])],
            duration_ms=_optional_float(data.get("duration")),
            backup=BackupSnapshot.from_dict(backup) if isinstance(backup, dict) else None,
            error=data.get("error") or None,
            warnings=[str(w) for w in (data.get("warnings") or [])],
        )


@dataclass
class HealthCheckResult:
    name: str
    status: CheckStatus
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.details:
            out["details"] = self.details
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class HealthReport:
    url: str
    environment: str
    overall: OverallHealth
    checks: list[HealthCheckResult]
    timestamp: datetime
    duration_ms: float
    error: str | None = None

    def count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def failures(self) -> list[HealthCheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "url": self.url,
            "environment": self.environment,
            "overall": self.overall.value,
            "checks": [c.to_dict() for c in self.checks],
            "timestamp": format_ts(self.timestamp),
            "duration": round(self.duration_ms, 3),
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class MetricSample:
    timestamp: datetime
    environment: str
    url: str
    status_code: int | None
    response_time_ms: float | None
    success: bool
    content_length: int = 0
    server_header: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": format_ts(self.timestamp),
            "environment": self.environment,
            "url": self.url,
            "statusCode": self.status_code,
            "responseTime": self.response_time_ms,
            "success": self.success,
            "contentLength": self.content_length,
        }
        if self.server_header is not None:
            out["serverHeader"] = self.server_header
        if self.error:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricSample:
        if not isinstance(data, dict):
            raise ValueError("metric sample must be a mapping")
        return cls(
            timestamp=parse_ts(data.get("timestamp")),
            environment=_require_str(data, "environment"),
            url=str(data.get("url") or ""),
            status_code=_optional_int(data.get("statusCode")),
            response_time_ms=_optional_float(data.get("responseTime")),
            success=bool(data.get("success")),
            content_length=_optional_int(data.get("contentLength")) or 0,
            server_header=data.get("serverHeader"),
            error=data.get("error") or None,
        )


@dataclass
class PerformanceSummary:
    timestamp: datetime
    environment: str
    availability: float
    avg_response_time_ms: float | None
    total_checks: int
    success_count: int

    @property
    def error_count(self) -> int:
        return self.total_checks - self.success_count

    @property
    def error_rate(self) -> float:
        if self.total_checks <= 0:
            return 0.0
        return self.error_count / self.total_checks

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_ts(self.timestamp),
            "environment": self.environment,
            "availability": self.availability,
            "avgResponseTime": self.avg_response_time_ms,
            "totalChecks": self.total_checks,
            "successCount": self.success_count,
            "errorCount": self.error_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceSummary:
        if not isinstance(data, dict):
            raise ValueError("performance summary must be a mapping")
        availability = _optional_float(data.get("availability"))
        if availability is None:
            raise ValueError("availability is required")
        return cls(
            timestamp=parse_ts(data.get("timestamp")),
            environment=_require_str(data, "environment"),
            availability=availability,
            avg_response_time_ms=_optional_float(data.get("avgResponseTime")),
            total_checks=_optional_int(data.get("totalChecks")) or 0,
            success_count=_optional_int(data.get("successCount")) or 0,
        )


@dataclass
class Alert:
    timestamp: datetime
    type: AlertType
    title: str
    message: str
    severity: Severity
    environment: str | None = None

    @classmethod
    def create(
        cls,
        alert_type: AlertType,
        title: str,
        message: str,
        *,
        environment: str | None = None,
        timestamp: datetime | None = None,
    ) -> Alert:
        return cls(
            timestamp=timestamp or utcnow(),
            type=alert_type,
            title=title,
            message=message,
            severity=severity_for(alert_type),
            environment=environment,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": format_ts(self.timestamp),
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.environment:
            out["environment"] = self.environment
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        if not isinstance(data, dict):
            raise ValueError("alert must be a mapping")
        alert_type = AlertType(data.get("type"))
        return cls(
            timestamp=parse_ts(data.get("timestamp")),
            type=alert_type,
            title=_require_str(data, "title"),
            message=str(data.get("message") or ""),
            # Severity is a function of the type; stored values are ignored.
            severity=severity_for(alert_type),
            environment=data.get("environment") or None,
        )
