"""Post-deploy health battery for a single static web app URL.

Checks run in a fixed order and never short-circuit: every check catches its
own probe errors and records them as a ``fail`` result, so a report is always
produced. Only an unexpected exception inside the checker itself turns the
overall outcome into ``error``.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urljoin

import structlog

from deploy_watch.errors import ProbeError
from deploy_watch.models import CheckStatus, HealthCheckResult, HealthReport, OverallHealth, utcnow
from deploy_watch.retry import fixed_interval_attempts
from deploy_watch.sampler import MetricSampler, ProbeResponse


logger = structlog.get_logger(__name__)

STATIC_ASSET_PATHS = ("/static/css/", "/static/js/", "/manifest.json", "/favicon.ico")
# 404: optional asset absent, 403: directory listing disabled.
STATIC_ASSET_OK_CODES = frozenset({200, 403, 404})
APPLICATION_ROUTES = ("/", "/about", "/contact", "/nonexistent-route")

# (display name, header, expected) - expected None means presence only.
SECURITY_HEADERS: tuple[tuple[str, str, str | frozenset[str] | None], ...] = (
    ("X-Content-Type-Options", "x-content-type-options", "nosniff"),
    ("X-Frame-Options", "x-frame-options", frozenset({"DENY", "SAMEORIGIN"})),
    ("X-XSS-Protection", "x-xss-protection", "1; mode=block"),
    ("Strict-Transport-Security", "strict-transport-security", None),
)

DEBUG_MARKERS = ("debug", "development")
_OPTIMIZED_ASSET_RE = re.compile(r"\.min\.(?:js|css)\b|\.[0-9a-f]{8,}(?:\.chunk)?\.(?:js|css)\b", re.IGNORECASE)


def security_header_status(value: str | None, expected: str | frozenset[str] | None) -> CheckStatus:
    if not value:
        return CheckStatus.FAIL
    if expected is None:
        return CheckStatus.PASS
    if isinstance(expected, frozenset):
        return CheckStatus.PASS if value.strip().upper() in expected else CheckStatus.WARN
    return CheckStatus.PASS if value.strip() == expected else CheckStatus.WARN


def overall_from_checks(checks: list[HealthCheckResult]) -> OverallHealth:
    if any(c.status == CheckStatus.FAIL for c in checks):
        return OverallHealth.UNHEALTHY
    return OverallHealth.HEALTHY


class HealthChecker:
    def __init__(
        self,
        sampler: MetricSampler,
        *,
        availability_samples: int = 5,
        availability_interval_seconds: float = 2.0,
        performance_threshold_ms: float = 2000.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sampler = sampler
        self.availability_samples = max(1, int(availability_samples))
        self.availability_interval_seconds = float(availability_interval_seconds)
        self.performance_threshold_ms = float(performance_threshold_ms)
        self._sleep = sleep

    async def run_health_checks(self, url: str, environment: str) -> HealthReport:
        started = time.perf_counter()
        timestamp = utcnow()
        checks: list[HealthCheckResult] = []
        logger.info("Starting health checks", environment=environment, url=url)

        try:
            checks.append(await self.check_basic_connectivity(url))
            checks.extend(await self.check_static_assets(url))
            checks.extend(await self.check_application_routes(url))
            checks.extend(await self.check_security_headers(url))
            checks.append(await self.check_performance(url))
            checks.append(await self.check_availability(url))
            checks.extend(await self.check_environment_specific(url, environment))
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            logger.exception("Health checker crashed", environment=environment, url=url)
            return HealthReport(
                url=url,
                environment=environment,
                overall=OverallHealth.ERROR,
                checks=checks,
                timestamp=timestamp,
                duration_ms=duration_ms,
                error=f"{type(exc).__name__}: {exc}",
            )

        duration_ms = (time.perf_counter() - started) * 1000.0
        report = HealthReport(
            url=url,
            environment=environment,
            overall=overall_from_checks(checks),
            checks=checks,
            timestamp=timestamp,
            duration_ms=duration_ms,
        )
        logger.info(
            "Health checks finished",
            environment=environment,
            overall=report.overall.value,
            passed=report.count(CheckStatus.PASS),
            warnings=report.count(CheckStatus.WARN),
            failed=report.count(CheckStatus.FAIL),
            duration_ms=round(duration_ms, 1),
        )
        return report

    async def _probe_check(
        self,
        name: str,
        url: str,
        judge: Callable[[ProbeResponse], tuple[CheckStatus, dict[str, Any]]],
    ) -> HealthCheckResult:
        try:
            resp = await self.sampler.probe(url)
        except ProbeError as exc:
            logger.warning("Health probe failed", check=name, url=url, error=str(exc))
            return HealthCheckResult(name=name, status=CheckStatus.FAIL, error=str(exc))
        status, details = judge(resp)
        logger.debug("Health check evaluated", check=name, status=status.value, status_code=resp.status_code)
        return HealthCheckResult(name=name, status=status, details=details)

    async def check_basic_connectivity(self, url: str) -> HealthCheckResult:
        def judge(resp: ProbeResponse) -> tuple[CheckStatus, dict[str, Any]]:
            status = CheckStatus.PASS if resp.status_code == 200 else CheckStatus.FAIL
            return status, {
                "statusCode": resp.status_code,
                "responseTime": resp.response_time_ms,
                "contentLength": resp.header("content-length"),
            }

        return await self._probe_check("Basic Connectivity", url, judge)

    async def check_static_assets(self, url: str) -> list[HealthCheckResult]:
        def judge(resp: ProbeResponse) -> tuple[CheckStatus, dict[str, Any]]:
            status = CheckStatus.PASS if resp.status_code in STATIC_ASSET_OK_CODES else CheckStatus.FAIL
            return status, {"statusCode": resp.status_code, "responseTime": resp.response_time_ms}

        results = []
        for path in STATIC_ASSET_PATHS:
            results.append(await self._probe_check(f"Static Asset: {path}", urljoin(url, path), judge))
        return results

    async def check_application_routes(self, url: str) -> list[HealthCheckResult]:
        # Single-page apps must serve the shell for unknown routes too.
        def judge(resp: ProbeResponse) -> tuple[CheckStatus, dict[str, Any]]:
            status = CheckStatus.PASS if resp.status_code == 200 else CheckStatus.WARN
            return status, {"statusCode": resp.status_code, "responseTime": resp.response_time_ms}

        results = []
        for route in APPLICATION_ROUTES:
            results.append(await self._probe_check(f"Route: {route}", urljoin(url, route), judge))
        return results

    async def check_security_headers(self, url: str) -> list[HealthCheckResult]:
        try:
            resp = await self.sampler.probe(url)
        except ProbeError as exc:
            logger.warning("Security header probe failed", url=url, error=str(exc))
            return [HealthCheckResult(name="Security Headers", status=CheckStatus.FAIL, error=str(exc))]

        results = []
        for display, header, expected in SECURITY_HEADERS:
            value = resp.header(header)
            status = security_header_status(value, expected)
            if isinstance(expected, frozenset):
                expected_repr: Any = sorted(expected)
            else:
                expected_repr = expected
            results.append(
                HealthCheckResult(
                    name=f"Security Header: {display}",
                    status=status,
                    details={"value": value or "missing", "expected": expected_repr},
                )
            )
        return results

    async def check_performance(self, url: str) -> HealthCheckResult:
        def judge(resp: ProbeResponse) -> tuple[CheckStatus, dict[str, Any]]:
            # Content length and compression are reported, never gating.
            status = CheckStatus.PASS if resp.response_time_ms < self.performance_threshold_ms else CheckStatus.WARN
            return status, {
                "responseTime": resp.response_time_ms,
                "contentLength": resp.content_length,
                "compression": resp.header("content-encoding") or "none",
                "thresholdMs": self.performance_threshold_ms,
            }

        return await self._probe_check("Performance Metrics", url, judge)

    async def check_availability(self, url: str) -> HealthCheckResult:
        # Samples are sequential and spaced in time.
        attempts: list[dict[str, Any]] = []
        async for attempt in fixed_interval_attempts(
            self.availability_samples, self.availability_interval_seconds, sleep=self._sleep
        ):
            try:
                resp = await self.sampler.probe(url)
            except ProbeError as exc:
                attempts.append({"attempt": attempt, "error": str(exc), "success": False})
            else:
                attempts.append(
                    {
                        "attempt": attempt,
                        "statusCode": resp.status_code,
                        "responseTime": resp.response_time_ms,
                        "success": resp.status_code == 200,
                    }
                )

        success_ratio = sum(1 for a in attempts if a["success"]) / float(len(attempts))
        timings = [a["responseTime"] for a in attempts if a.get("responseTime") is not None]
        avg_ms = sum(timings) / len(timings) if timings else None
        status = CheckStatus.PASS if success_ratio >= 0.8 else CheckStatus.FAIL
        return HealthCheckResult(
            name="Availability Check",
            status=status,
            details={
                "successRate": round(success_ratio, 4),
                "averageResponseTime": round(avg_ms, 3) if avg_ms is not None else None,
                "checks": attempts,
            },
        )

    async def check_environment_specific(self, url: str, environment: str) -> list[HealthCheckResult]:
        try:
            resp = await self.sampler.probe(url)
        except ProbeError as exc:
            logger.warning("Environment probe failed", url=url, error=str(exc))
            return [HealthCheckResult(name="Environment-Specific Checks", status=CheckStatus.FAIL, error=str(exc))]

        body = resp.body
        body_lower = body.lower()
        results: list[HealthCheckResult] = []
        if environment == "production":
            debug_hits = [m for m in DEBUG_MARKERS if m in body_lower]
            results.append(
                HealthCheckResult(
                    name="No Debug Information",
                    status=CheckStatus.WARN if debug_hits else CheckStatus.PASS,
                    details={"hasDebugInfo": bool(debug_hits), "markers": debug_hits},
                )
            )
            optimized = bool(_OPTIMIZED_ASSET_RE.search(body))
            results.append(
                HealthCheckResult(
                    name="Optimized Assets",
                    status=CheckStatus.PASS if optimized else CheckStatus.WARN,
                    details={"hasMinifiedAssets": optimized},
                )
            )

        if environment and environment.lower() in body_lower:
            results.append(
                HealthCheckResult(
                    name="Environment Detection",
                    status=CheckStatus.PASS,
                    details={"environment": "detected"},
                )
            )
        return results


_STATUS_ICON = {CheckStatus.PASS: "PASS", CheckStatus.WARN: "WARN", CheckStatus.FAIL: "FAIL"}


def format_report(report: HealthReport) -> str:
    lines = [
        "=" * 60,
        f"HEALTH CHECK REPORT: {report.environment} ({report.url})",
        "=" * 60,
        f"Passed:   {report.count(CheckStatus.PASS)}",
        f"Warnings: {report.count(CheckStatus.WARN)}",
        f"Failed:   {report.count(CheckStatus.FAIL)}",
        f"Duration: {int(round(report.duration_ms))}ms",
        "",
        "Detailed results:",
    ]
    for check in report.checks:
        lines.append(f"  [{_STATUS_ICON[check.status]}] {check.name}")
        if check.error:
            lines.append(f"         Error: {check.error}")
    if report.error:
        lines.append(f"Checker error: {report.error}")
    lines.append("=" * 60)
    lines.append(f"Overall health: {report.overall.value.upper()}")
    return "\n".join(lines)
