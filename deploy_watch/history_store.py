"""Deployment and rollback history, persisted as whole JSON documents.

``deployment-history.json`` is keyed by environment, newest record first::

    {"production": [{"id": "dep-...", "status": "active", ...}, ...], ...}

Older releases of the tooling wrote one flat list; that shape is still read and
is rewritten per environment on the next save.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog

from deploy_watch.errors import PersistenceError
from deploy_watch.models import (
    DeploymentRecord,
    DeploymentStatus,
    Environment,
    RollbackRecord,
    new_id,
    utcnow,
)
from deploy_watch.state_files import read_json_document, write_json_atomic


logger = structlog.get_logger(__name__)

# CI environment variable -> metadata key recorded with every deployment.
CI_METADATA_ENV = {
    "GITHUB_SHA": "gitSha",
    "GITHUB_REF": "gitRef",
    "GITHUB_RUN_ID": "workflowRun",
    "GITHUB_ACTOR": "actor",
}


def ci_metadata_from_env() -> dict[str, str]:
    out: dict[str, str] = {}
    for env_name, key in CI_METADATA_ENV.items():
        value = os.getenv(env_name)
        if value:
            out[key] = value
    return out


def _coerce_records(raw: Any) -> list[DeploymentRecord]:
    if isinstance(raw, dict):
        items = [item for values in raw.values() if isinstance(values, list) for item in values]
    elif isinstance(raw, list):
        items = raw
    else:
        return []

    records: list[DeploymentRecord] = []
    for item in items:
        try:
            records.append(DeploymentRecord.from_dict(item))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Dropping malformed deployment record", error=str(exc))
    return records


class DeploymentHistoryStore:
    """Owns every DeploymentRecord; at most one ``active`` record per environment.

    Mutations persist immediately. A failed save is logged and the in-memory
    history stays authoritative until the next successful save.
    """

    def __init__(self, path: Path, *, max_depth: int = 10) -> None:
        self.path = Path(path)
        self.max_depth = max(1, int(max_depth))
        self._by_env: dict[Environment, list[DeploymentRecord]] = {}
        self.last_save_error: str | None = None

    def load(self) -> None:
        self._by_env = {}
        for record in _coerce_records(read_json_document(self.path, default={})):
            self._by_env.setdefault(record.environment, []).append(record)
        for env, records in self._by_env.items():
            records.sort(key=lambda r: r.timestamp, reverse=True)
            self._enforce_single_active(env)
        logger.info("Loaded deployment history", path=str(self.path), records=len(self.all_records()))

    def _enforce_single_active(self, environment: Environment) -> None:
        # Hand-edited files can carry several actives; the newest one wins.
        seen_active = False
        for record in self._by_env.get(environment, []):
            if record.is_active:
                if seen_active:
                    record.status = DeploymentStatus.INACTIVE
                seen_active = True

    def save(self) -> bool:
        payload = {
            env.value: [r.to_dict() for r in records]
            for env, records in sorted(self._by_env.items(), key=lambda kv: kv[0].value)
        }
        try:
            write_json_atomic(self.path, payload)
        except PersistenceError as exc:
            self.last_save_error = str(exc)
            logger.error("Failed to save deployment history", path=str(self.path), error=str(exc))
            return False
        self.last_save_error = None
        return True

    def all_records(self) -> list[DeploymentRecord]:
        return [r for records in self._by_env.values() for r in records]

    def records_for(self, environment: Environment | str) -> list[DeploymentRecord]:
        return list(self._by_env.get(Environment(environment), []))

    def record(
        self,
        environment: Environment | str,
        version: str,
        url: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeploymentRecord:
        env = Environment(environment)
        if not str(version or "").strip():
            raise ValueError("version is required")

        record = DeploymentRecord(
            id=new_id("dep"),
            timestamp=utcnow(),
            environment=env,
            version=str(version).strip(),
            url=url,
            status=DeploymentStatus.ACTIVE,
            metadata={**ci_metadata_from_env(), **(metadata or {})},
        )
        records = self._by_env.setdefault(env, [])
        for existing in records:
            if existing.is_active:
                existing.status = DeploymentStatus.INACTIVE
        records.insert(0, record)
        del records[self.max_depth :]

        self.save()
        logger.info("Recorded deployment", environment=env.value, version=record.version, deployment_id=record.id)
        return record

    def activate(self, environment: Environment | str, deployment_id: str) -> DeploymentRecord:
        """Make an existing record the live one (used by completed rollbacks)."""
        env = Environment(environment)
        records = self._by_env.get(env, [])
        target = next((r for r in records if r.id == deployment_id), None)
        if target is None:
            raise KeyError(f"No deployment {deployment_id} recorded for {env.value}")
        for record in records:
            record.status = DeploymentStatus.ACTIVE if record is target else DeploymentStatus.INACTIVE
        self.save()
        logger.info("Activated deployment", environment=env.value, version=target.version, deployment_id=target.id)
        return target

    def get_current(self, environment: Environment | str) -> DeploymentRecord | None:
        return next((r for r in self._by_env.get(Environment(environment), []) if r.is_active), None)

    def get_previous(self, environment: Environment | str) -> DeploymentRecord | None:
        inactive = [r for r in self._by_env.get(Environment(environment), []) if not r.is_active]
        if not inactive:
            return None
        return max(inactive, key=lambda r: r.timestamp)

    def find_by_version(self, environment: Environment | str, version: str) -> DeploymentRecord | None:
        wanted = str(version or "").strip()
        return next((r for r in self._by_env.get(Environment(environment), []) if r.version == wanted), None)


class RollbackHistoryStore:
    """Append-only list of every rollback that got past its preconditions."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.records: list[RollbackRecord] = []

    def load(self) -> None:
        raw = read_json_document(self.path, default=[])
        self.records = []
        if not isinstance(raw, list):
            logger.warning("Rollback history is not a list; starting empty", path=str(self.path))
            return
        for item in raw:
            try:
                self.records.append(RollbackRecord.from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Dropping malformed rollback record", error=str(exc))

    def append(self, record: RollbackRecord) -> bool:
        self.records.append(record)
        try:
            write_json_atomic(self.path, [r.to_dict() for r in self.records])
        except PersistenceError as exc:
            logger.error("Failed to save rollback history", path=str(self.path), error=str(exc))
            return False
        return True

    def for_environment(self, environment: Environment | str) -> list[RollbackRecord]:
        env = Environment(environment)
        return [r for r in self.records if r.environment == env]
