"""External collaborators invoked by rollback execution.

The coordinator only needs "invoke and await success/failure"; any exception
raised here fails the corresponding rollback step.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from deploy_watch.errors import ExternalCallError
from deploy_watch.models import DeploymentRecord, Environment


logger = structlog.get_logger(__name__)


class TrafficRouter:
    async def switch(self, environment: Environment, target: DeploymentRecord) -> None:
        raise NotImplementedError


class NoopTrafficRouter(TrafficRouter):
    """Static web app hosting has no slots to swap; the redeploy is the switch."""

    async def switch(self, environment: Environment, target: DeploymentRecord) -> None:
        logger.info(
            "Traffic routing switch not required for platform",
            environment=environment.value,
            version=target.version,
        )


class RedeployTrigger:
    async def trigger(self, environment: Environment, target: DeploymentRecord) -> None:
        raise NotImplementedError


class NoopRedeployTrigger(RedeployTrigger):
    async def trigger(self, environment: Environment, target: DeploymentRecord) -> None:
        logger.warning(
            "Redeploy trigger not configured; skipping",
            environment=environment.value,
            version=target.version,
        )


@dataclass(frozen=True)
class GitHubWorkflowConfig:
    token: str
    repository: str
    workflow: str = "manual-rollback.yml"
    default_ref: str = "main"
    api_url: str = "https://api.github.com"
    timeout_seconds: float = 30.0


def build_workflow_dispatch_payload(
    environment: Environment, target: DeploymentRecord, *, default_ref: str = "main"
) -> dict[str, object]:
    ref = str(target.metadata.get("gitRef") or "").strip() or default_ref
    return {
        "ref": ref,
        "inputs": {
            "environment": environment.value,
            "version": target.version,
            "rollback": "true",
        },
    }


class GitHubWorkflowTrigger(RedeployTrigger):
    """Redeploys the target ref through a ``workflow_dispatch`` event."""

    def __init__(self, client: httpx.AsyncClient, cfg: GitHubWorkflowConfig) -> None:
        self.client = client
        self.cfg = cfg

    def dispatch_url(self) -> str:
        return (
            f"{self.cfg.api_url.rstrip('/')}/repos/{self.cfg.repository}"
            f"/actions/workflows/{self.cfg.workflow}/dispatches"
        )

    async def trigger(self, environment: Environment, target: DeploymentRecord) -> None:
        payload = build_workflow_dispatch_payload(environment, target, default_ref=self.cfg.default_ref)
        logger.info(
            "Triggering redeployment",
            environment=environment.value,
            version=target.version,
            ref=payload["ref"],
            workflow=self.cfg.workflow,
        )
        try:
            resp = await self.client.post(
                self.dispatch_url(),
                headers={
                    "Authorization": f"Bearer {self.cfg.token}",
                    "Accept": "application/vnd.github+json",
                },
                json=payload,
                timeout=self.cfg.timeout_seconds,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalCallError(
                f"workflow dispatch rejected: HTTP {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalCallError(f"workflow dispatch failed: {type(exc).__name__}: {exc}") from exc
