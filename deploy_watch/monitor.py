"""Continuous availability / latency monitoring.

Each cycle samples every target concurrently, waits for all of them, then
analyzes the rolling window per environment, raises threshold alerts,
dispatches them and persists the pruned state document.
"""

from __future__ import annotations

import asyncio
import signal
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog

from deploy_watch.config import AlertThresholds, MonitorTarget
from deploy_watch.dashboard import build_dashboard, write_dashboard
from deploy_watch.errors import PersistenceError, ProbeError
from deploy_watch.metrics import (
    MetricsState,
    evaluate_thresholds,
    load_metrics_state,
    save_metrics_state,
    summarize_window,
    window_samples,
)
from deploy_watch.models import Alert, AlertType, MetricSample, utcnow
from deploy_watch.notifications import NotificationDispatcher
from deploy_watch.sampler import MetricSampler, safe_url


logger = structlog.get_logger(__name__)


class MonitoringLoop:
    def __init__(
        self,
        sampler: MetricSampler,
        notifier: NotificationDispatcher,
        *,
        metrics_path: Path,
        thresholds: AlertThresholds | None = None,
        interval_seconds: float = 60.0,
        retention: timedelta = timedelta(days=30),
        analysis_window: timedelta = timedelta(hours=1),
        dashboard_json_path: Optional[Path] = None,
        dashboard_html_path: Optional[Path] = None,
    ) -> None:
        self.sampler = sampler
        self.notifier = notifier
        self.metrics_path = Path(metrics_path)
        self.thresholds = thresholds or AlertThresholds()
        self.interval_seconds = float(interval_seconds)
        self.retention = retention
        self.analysis_window = analysis_window
        self.dashboard_json_path = dashboard_json_path
        self.dashboard_html_path = dashboard_html_path
        self.state = MetricsState()
        self.started_at: datetime = utcnow()
        self.targets: list[MonitorTarget] = []
        self.cycles = 0
        self._stop = asyncio.Event()

    def load_state(self) -> None:
        self.state = load_metrics_state(self.metrics_path)
        logger.info(
            "Loaded monitoring state",
            path=str(self.metrics_path),
            samples=len(self.state.samples),
            alerts=len(self.state.alerts),
        )

    def save_state(self) -> bool:
        try:
            save_metrics_state(self.metrics_path, self.state)
        except PersistenceError as exc:
            logger.error("Failed to save monitoring state", path=str(self.metrics_path), error=str(exc))
            return False
        return True

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def sample_target(self, target: MonitorTarget) -> MetricSample:
        env = target.environment.value
        ts = utcnow()
        try:
            resp = await self.sampler.probe(target.url)
        except ProbeError as exc:
            logger.warning("Probe failed", environment=env, url=safe_url(target.url), error=str(exc))
            return MetricSample(
                timestamp=ts,
                environment=env,
                url=target.url,
                status_code=None,
                response_time_ms=None,
                success=False,
                error=str(exc),
            )

        ok = resp.status_code == 200
        log = logger.info if ok else logger.warning
        log(
            "Probe complete",
            environment=env,
            status_code=resp.status_code,
            response_time_ms=round(resp.response_time_ms),
            ok=ok,
        )
        return MetricSample(
            timestamp=ts,
            environment=env,
            url=target.url,
            status_code=resp.status_code,
            response_time_ms=resp.response_time_ms,
            success=ok,
            content_length=resp.content_length,
            server_header=resp.header("server"),
            error=None if ok else f"HTTP {resp.status_code}",
        )

    def analyze(self, environments: list[str], *, now: datetime) -> list[Alert]:
        alerts: list[Alert] = []
        since = now - self.analysis_window
        for env in environments:
            summary = summarize_window(env, window_samples(self.state.samples_for(env), since=since), now=now)
            if summary is None:
                continue
            self.state.performance.append(summary)
            logger.info(
                "Performance summary",
                environment=env,
                availability=round(summary.availability, 4),
                avg_response_time_ms=None
                if summary.avg_response_time_ms is None
                else round(summary.avg_response_time_ms),
                total_checks=summary.total_checks,
            )
            alerts.extend(
                evaluate_thresholds(
                    summary,
                    availability_min=self.thresholds.availability,
                    response_time_max_ms=self.thresholds.response_time_ms,
                    error_rate_max=self.thresholds.error_rate,
                    now=now,
                )
            )
        return alerts

    async def raise_alerts(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            self.state.alerts.append(alert)
            logger.warning(
                "Alert raised",
                type=alert.type.value,
                severity=alert.severity.value,
                environment=alert.environment,
                title=alert.title,
            )
        for alert in alerts:
            await self.notifier.send_alert(alert)

    def prune(self, *, now: datetime) -> None:
        self.state.prune(before=now - self.retention)

    async def run_cycle(self, targets: list[MonitorTarget], *, now: datetime | None = None) -> list[Alert]:
        """One full sample / analyze / alert / dispatch / persist pass."""
        samples = await asyncio.gather(*(self.sample_target(t) for t in targets))
        now = now or utcnow()
        for sample in samples:
            self.state.append_sample(sample)

        environments = list(dict.fromkeys(t.environment.value for t in targets))
        alerts = self.analyze(environments, now=now)
        await self.raise_alerts(alerts)

        self.prune(now=now)
        self.save_state()
        self.cycles += 1
        return alerts

    async def _safe_cycle(self, targets: list[MonitorTarget]) -> None:
        try:
            await self.run_cycle(targets)
        except Exception as exc:
            err = f"{type(exc).__name__}: {exc}"
            logger.exception("Monitoring cycle crashed", error=err)
            alert = Alert.create(AlertType.SYSTEM, "Monitoring System Error", f"Monitoring cycle failed: {err}")
            await self.raise_alerts([alert])
            self.save_state()

    def generate_dashboard(self) -> dict:
        environments = [(t.environment.value, t.url) for t in self.targets]
        dashboard = build_dashboard(self.state, environments, started_at=self.started_at)
        if self.dashboard_json_path is not None and self.dashboard_html_path is not None:
            write_dashboard(dashboard, json_path=self.dashboard_json_path, html_path=self.dashboard_html_path)
        return dashboard

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not available on this platform / outside the main thread.
                logger.debug("Signal handler not installed", signal=sig.name)
                continue
            installed.append(sig)
        return installed

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Shutdown signal received; finishing current cycle", signal=sig.name)
        self.stop()

    async def start_monitoring(self, targets: list[MonitorTarget], *, once: bool = False) -> None:
        """Run cycles until ``stop()`` (or SIGINT/SIGTERM); write the dashboard on the way out."""
        self.targets = list(targets)
        self.started_at = utcnow()
        self.load_state()
        installed = self._install_signal_handlers()
        logger.info(
            "Monitoring started",
            targets=[f"{t.environment.value}={safe_url(t.url)}" for t in self.targets],
            interval_seconds=self.interval_seconds,
        )

        try:
            while not self.stopping:
                cycle_started = time.monotonic()
                logger.info("Running monitoring cycle", cycle=self.cycles + 1)
                await self._safe_cycle(self.targets)
                if once:
                    break

                elapsed = time.monotonic() - cycle_started
                sleep_for = max(0.0, self.interval_seconds - elapsed)
                logger.info("Cycle complete", elapsed_seconds=round(elapsed, 3), sleep_seconds=round(sleep_for, 3))
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
        finally:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.generate_dashboard()
            logger.info("Monitoring stopped", cycles=self.cycles)
