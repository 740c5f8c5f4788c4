"""Rollback coordination.

One ``initiate_rollback`` call walks a single attempt through
``requested -> pre-checked -> executing -> verifying -> completed | failed``.
Precondition failures raise before any record exists. Once a record exists the
call always returns it; step and verification failures are recorded on it.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional, TypeVar

import structlog

from deploy_watch.errors import (
    NoCurrentDeploymentError,
    NoTargetDeploymentError,
    ProbeError,
    RollbackStepError,
    SameVersionError,
    VerificationFailedError,
)
from deploy_watch.history_store import DeploymentHistoryStore, RollbackHistoryStore
from deploy_watch.metrics import error_rate_for, load_metrics_state
from deploy_watch.models import (
    BackupSnapshot,
    DeploymentRecord,
    Environment,
    RollbackPhase,
    RollbackRecord,
    RollbackStatus,
    RollbackStep,
    StepStatus,
    VersionRef,
    format_ts,
    new_id,
    utcnow,
)
from deploy_watch.notifications import Notification, NotificationDispatcher
from deploy_watch.platform import (
    NoopRedeployTrigger,
    NoopTrafficRouter,
    RedeployTrigger,
    TrafficRouter,
)
from deploy_watch.retry import fixed_interval_attempts
from deploy_watch.sampler import MetricSampler, safe_url
from deploy_watch.state_files import write_json_atomic


logger = structlog.get_logger(__name__)

T = TypeVar("T")

VERSION_RE = re.compile(r"""version["\s:]*["']?([^"'\s<>,]+)""", re.IGNORECASE)

DEFAULT_BACKUP_FILES = ("staticwebapp.config.json", "deployment-config.json")


def detect_version(body: str) -> str | None:
    m = VERSION_RE.search(body or "")
    if not m:
        return None
    return m.group(1)


def _normalize_version(value: str) -> str:
    s = str(value or "").strip()
    return s[1:] if s[:1] in ("v", "V") else s


def versions_match(detected: str, expected: str) -> bool:
    return _normalize_version(detected) == _normalize_version(expected)


@dataclass
class AutoRollbackDecision:
    environment: Environment
    url: str
    enabled: bool
    triggered: bool
    reasons: list[str] = field(default_factory=list)
    status_code: int | None = None
    response_time_ms: float | None = None
    error_rate: float = 0.0
    rollback: RollbackRecord | None = None

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


class RollbackCoordinator:
    """Owns rollback attempts for every environment.

    Attempts for the same environment are serialized on an in-process lock;
    different environments proceed concurrently.
    """

    def __init__(
        self,
        store: DeploymentHistoryStore,
        rollback_history: RollbackHistoryStore,
        sampler: MetricSampler,
        notifier: NotificationDispatcher,
        *,
        traffic_router: Optional[TrafficRouter] = None,
        redeploy_trigger: Optional[RedeployTrigger] = None,
        base_dir: Path = Path("."),
        backup_files: tuple[str, ...] | list[str] = DEFAULT_BACKUP_FILES,
        environments_dir: str = "environments",
        verification_attempts: int = 10,
        verification_interval_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.rollback_history = rollback_history
        self.sampler = sampler
        self.notifier = notifier
        self.traffic_router = traffic_router or NoopTrafficRouter()
        self.redeploy_trigger = redeploy_trigger or NoopRedeployTrigger()
        self.base_dir = Path(base_dir)
        self.backup_files = list(backup_files)
        self.environments_dir = environments_dir
        self.verification_attempts = max(1, int(verification_attempts))
        self.verification_interval_seconds = float(verification_interval_seconds)
        self._sleep = sleep
        self._locks: dict[Environment, asyncio.Lock] = {}

    def _lock_for(self, environment: Environment) -> asyncio.Lock:
        lock = self._locks.get(environment)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[environment] = lock
        return lock

    def environment_config_file(self, environment: Environment) -> str:
        return f"{self.environments_dir}/{environment.value}.json"

    def _resolve(self, rel: str) -> Path:
        return self.base_dir / rel

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def record_deployment(
        self,
        environment: Environment | str,
        version: str,
        url: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeploymentRecord:
        """Record a deploy; waits for any rollback of the same environment to finish first."""
        env = Environment(environment)
        lock = self._lock_for(env)
        if lock.locked():
            logger.warning("Rollback in progress; deployment record waits", environment=env.value, version=version)
        async with lock:
            return self.store.record(env, version, url, metadata)

    async def initiate_rollback(
        self,
        environment: Environment | str,
        target_version: str | None = None,
        reason: str = "Manual rollback",
    ) -> RollbackRecord:
        env = Environment(environment)
        lock = self._lock_for(env)
        waited = lock.locked()
        if waited:
            logger.warning("Rollback already in progress; waiting", environment=env.value)

        async with lock:
            current, target = self._resolve_target(env, target_version)

            record = RollbackRecord(
                id=new_id("rollback"),
                timestamp=utcnow(),
                environment=env,
                reason=reason or "Manual rollback",
                from_ref=VersionRef(current.version, current.id),
                to_ref=VersionRef(target.version, target.id),
            )
            started = time.perf_counter()
            logger.info(
                "Initiating rollback",
                rollback_id=record.id,
                environment=env.value,
                from_version=current.version,
                to_version=target.version,
                reason=record.reason,
            )

            record.warnings = await self._pre_rollback_checks(env, target, waited_for_lock=waited)
            record.phase = RollbackPhase.PRE_CHECKED

            await self._execute_and_verify(record, current, target)

            record.duration_ms = round((time.perf_counter() - started) * 1000.0, 3)
            self.rollback_history.append(record)

        if record.status == RollbackStatus.COMPLETED:
            logger.info(
                "Rollback completed",
                rollback_id=record.id,
                environment=env.value,
                version=target.version,
                duration_ms=record.duration_ms,
            )
        else:
            logger.error(
                "Rollback failed",
                rollback_id=record.id,
                environment=env.value,
                version=target.version,
                error=record.error,
            )
        await self.notifier.send(rollback_notification(record))
        return record

    def _resolve_target(
        self, env: Environment, target_version: str | None
    ) -> tuple[DeploymentRecord, DeploymentRecord]:
        current = self.store.get_current(env)
        if current is None:
            raise NoCurrentDeploymentError(env.value)

        wanted = str(target_version or "").strip()
        if wanted:
            target = self.store.find_by_version(env, wanted)
            if target is None:
                raise NoTargetDeploymentError(env.value, wanted)
        else:
            target = self.store.get_previous(env)
            if target is None:
                raise NoTargetDeploymentError(env.value)

        # Covers an explicit target equal to current and a previous record that
        # re-deployed the live version under different metadata.
        if target.version == current.version:
            raise SameVersionError(env.value, current.version)
        return current, target

    async def _pre_rollback_checks(
        self, env: Environment, target: DeploymentRecord, *, waited_for_lock: bool
    ) -> list[str]:
        warnings: list[str] = []
        if waited_for_lock:
            warnings.append(f"Another rollback for {env.value} was in progress; started after it finished")

        if not target.url:
            warnings.append(f"Deployment {target.id} has no URL recorded")
        else:
            try:
                resp = await self.sampler.probe(target.url)
            except ProbeError as exc:
                warnings.append(f"Target URL {safe_url(target.url)} unreachable: {exc}")
            else:
                if resp.status_code != 200:
                    warnings.append(f"Target URL {safe_url(target.url)} returned HTTP {resp.status_code}")

        for w in warnings:
            logger.warning("Pre-rollback check", environment=env.value, warning=w)
        if not warnings:
            logger.info("Pre-rollback checks passed", environment=env.value)
        return warnings

    async def _execute_and_verify(
        self, record: RollbackRecord, current: DeploymentRecord, target: DeploymentRecord
    ) -> None:
        env = record.environment

        record.phase = RollbackPhase.EXECUTING
        try:
            record.backup = await self._run_step(
                record, "backup", "Creating backup of current deployment", lambda: self._backup(env, current)
            )
            await self._run_step(
                record,
                "routing",
                "Switching traffic to target version",
                lambda: self.traffic_router.switch(env, target),
            )
            await self._run_step(
                record,
                "config",
                "Updating environment configuration",
                lambda: self._update_environment_config(env, target),
            )
            await self._run_step(
                record,
                "redeploy",
                "Triggering redeployment of target version",
                lambda: self.redeploy_trigger.trigger(env, target),
            )
        except RollbackStepError as exc:
            self._fail(record, str(exc))
            return

        record.phase = RollbackPhase.VERIFYING
        try:
            await self.verify_rollback(env, target)
        except VerificationFailedError as exc:
            self._fail(record, str(exc))
            return

        live = self.store.get_current(env)
        if live is None or live.id != current.id:
            self._fail(
                record,
                f"Deployment history for {env.value} changed during rollback "
                f"(live version is now {live.version if live else 'none'}); not activating {target.version}",
            )
            return
        try:
            self.store.activate(env, target.id)
        except KeyError as exc:
            self._fail(record, f"Could not activate {target.version}: {exc.args[0] if exc.args else exc}")
            return
        record.status = RollbackStatus.COMPLETED
        record.phase = RollbackPhase.COMPLETED

    def _fail(self, record: RollbackRecord, error: str) -> None:
        record.status = RollbackStatus.FAILED
        record.phase = RollbackPhase.FAILED
        record.error = error
        if record.backup is not None:
            self.restore_backup(record.backup)

    async def _run_step(
        self,
        record: RollbackRecord,
        name: str,
        description: str,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        step = RollbackStep(name=name, description=description, timestamp=utcnow())
        record.steps.append(step)
        logger.info("Rollback step started", rollback_id=record.id, step=name)
        try:
            result = await action()
        except Exception as exc:
            step.status = StepStatus.FAILED
            step.completed_at = utcnow()
            step.error = f"{type(exc).__name__}: {exc}"
            logger.error("Rollback step failed", rollback_id=record.id, step=name, error=step.error)
            raise RollbackStepError(record.environment.value, name, exc) from exc
        step.status = StepStatus.COMPLETED
        step.completed_at = utcnow()
        logger.info("Rollback step completed", rollback_id=record.id, step=name)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _backup(self, env: Environment, current: DeploymentRecord) -> BackupSnapshot:
        files: dict[str, str | None] = {}
        for rel in [*self.backup_files, self.environment_config_file(env)]:
            path = self._resolve(rel)
            try:
                files[rel] = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                files[rel] = None
            except OSError as exc:
                # Left out of the snapshot entirely so restore never deletes it.
                logger.warning("Could not back up file", path=rel, error=str(exc))

        snapshot = BackupSnapshot(
            id=new_id("backup"),
            timestamp=utcnow(),
            deployment=DeploymentRecord.from_dict(current.to_dict()),
            files=files,
        )
        logger.info("Backup created", backup_id=snapshot.id, files=sorted(files))
        return snapshot

    async def _update_environment_config(self, env: Environment, target: DeploymentRecord) -> None:
        path = self._resolve(self.environment_config_file(env))
        config: dict[str, Any] = {}
        if path.exists():
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError(f"{path} does not hold a JSON object")
            config = loaded
        config["deployment"] = {
            "version": target.version,
            "rollback": True,
            "timestamp": format_ts(utcnow()),
        }
        write_json_atomic(path, config)
        logger.info("Environment configuration updated", environment=env.value, version=target.version)

    def restore_backup(self, backup: BackupSnapshot) -> bool:
        """Best-effort: every file is attempted, failures are logged, never raised."""
        logger.warning("Restoring from backup", backup_id=backup.id)
        ok = True
        for rel, content in backup.files.items():
            path = self._resolve(rel)
            try:
                if content is None:
                    path.unlink(missing_ok=True)
                else:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(content, encoding="utf-8")
            except OSError as exc:
                ok = False
                logger.error("Failed to restore file", backup_id=backup.id, path=rel, error=str(exc))
        if ok:
            logger.info("Backup restored", backup_id=backup.id)
        return ok

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_rollback(self, env: Environment, target: DeploymentRecord) -> int:
        """Poll the target until it serves HTTP 200 (and the target version, when
        the page exposes one). Returns the successful attempt number."""
        last: str | None = None
        async for attempt in fixed_interval_attempts(
            self.verification_attempts, self.verification_interval_seconds, sleep=self._sleep
        ):
            logger.info(
                "Verification attempt",
                environment=env.value,
                attempt=attempt,
                max_attempts=self.verification_attempts,
            )
            try:
                resp = await self.sampler.probe(target.url)
            except ProbeError as exc:
                last = str(exc)
                logger.warning("Verification probe failed", environment=env.value, attempt=attempt, error=last)
                continue

            if resp.status_code != 200:
                last = f"HTTP {resp.status_code}"
                logger.warning("Verification probe unhealthy", environment=env.value, attempt=attempt, status_code=resp.status_code)
                continue

            detected = detect_version(resp.body)
            if detected is not None and not versions_match(detected, target.version):
                last = f"serving version {detected}, expected {target.version}"
                logger.warning("Verification version mismatch", environment=env.value, attempt=attempt, detected=detected, expected=target.version)
                continue

            logger.info("Rollback verification successful", environment=env.value, attempt=attempt)
            return attempt

        raise VerificationFailedError(env.value, safe_url(target.url), self.verification_attempts, last)

    # ------------------------------------------------------------------
    # Automatic triggers
    # ------------------------------------------------------------------

    async def check_auto_rollback_triggers(
        self,
        environment: Environment | str,
        url: str,
        *,
        enabled: bool,
        metrics_path: Path,
        analysis_window: timedelta = timedelta(hours=1),
        error_rate_threshold: float = 0.10,
        response_time_threshold_ms: float = 5000.0,
    ) -> AutoRollbackDecision:
        env = Environment(environment)
        decision = AutoRollbackDecision(environment=env, url=url, enabled=enabled, triggered=False)
        if not enabled:
            logger.info("Auto-rollback disabled", environment=env.value)
            return decision

        try:
            resp = await self.sampler.probe(url)
        except ProbeError as exc:
            decision.reasons.append(f"health check failed: {exc}")
        else:
            decision.status_code = resp.status_code
            decision.response_time_ms = resp.response_time_ms
            if resp.status_code != 200:
                decision.reasons.append(f"health check returned HTTP {resp.status_code}")
            if resp.response_time_ms > response_time_threshold_ms:
                decision.reasons.append(f"response time {resp.response_time_ms:.0f}ms")

        decision.error_rate = error_rate_for(load_metrics_state(metrics_path), env.value, window=analysis_window)
        if decision.error_rate > error_rate_threshold:
            decision.reasons.append(f"error rate {decision.error_rate * 100:.1f}%")

        logger.info(
            "Auto-rollback trigger check",
            environment=env.value,
            status_code=decision.status_code,
            response_time_ms=decision.response_time_ms,
            error_rate=round(decision.error_rate, 4),
            reasons=decision.reasons,
        )
        if not decision.reasons:
            return decision

        decision.triggered = True
        decision.rollback = await self.initiate_rollback(
            env, reason=f"Auto-rollback triggered: {decision.reason}"
        )
        return decision


def rollback_notification(record: RollbackRecord) -> Notification:
    completed = record.status == RollbackStatus.COMPLETED
    duration = f"{(record.duration_ms or 0.0) / 1000.0:.1f}s"
    lines = [
        f"From: {record.from_ref.version}",
        f"To: {record.to_ref.version}",
        f"Reason: {record.reason}",
        f"Duration: {duration}",
    ]
    if record.error:
        lines.append(f"Error: {record.error}")
    return Notification(
        title=f"Rollback {record.status.value}: {record.environment.value}",
        message="\n".join(lines),
        severity="success" if completed else "critical",
        kind="rollback",
        timestamp=utcnow(),
        fields=[
            ("Environment", record.environment.value),
            ("From", record.from_ref.version),
            ("To", record.to_ref.version),
            ("Status", record.status.value),
            ("Duration", duration),
        ],
    )
