"""Error taxonomy for probes, rollbacks and state persistence."""

from __future__ import annotations


class DeployWatchError(Exception):
    """Base class for every error raised by deploy_watch."""


class ConfigError(DeployWatchError):
    pass


class ProbeError(DeployWatchError):
    """A single HTTP probe could not produce a response."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


class NetworkError(ProbeError):
    """Connection refused, DNS failure, reset or any other transport error."""


class ProbeTimeoutError(ProbeError, TimeoutError):
    """The probe exceeded its configured timeout."""


class PersistenceError(DeployWatchError):
    """A state file could not be read or written."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{message} (path={path})")
        self.path = path


class ExternalCallError(DeployWatchError):
    """The hosting platform or CI system rejected a call."""


class RollbackError(DeployWatchError):
    def __init__(self, environment: str, message: str) -> None:
        super().__init__(message)
        self.environment = environment


class NoCurrentDeploymentError(RollbackError):
    def __init__(self, environment: str) -> None:
        super().__init__(environment, f"No current deployment found for {environment}")


class NoTargetDeploymentError(RollbackError):
    def __init__(self, environment: str, target_version: str | None = None) -> None:
        if target_version:
            message = f"No deployment of version {target_version} found for {environment}"
        else:
            message = f"No previous deployment available for rollback in {environment}"
        super().__init__(environment, message)
        self.target_version = target_version


class SameVersionError(RollbackError):
    def __init__(self, environment: str, version: str) -> None:
        super().__init__(environment, f"{environment} is already running version {version}")
        self.version = version


class RollbackStepError(RollbackError):
    """An execution step failed; wraps the collaborator's original error."""

    def __init__(self, environment: str, step: str, cause: BaseException) -> None:
        super().__init__(environment, f"Rollback step '{step}' failed: {type(cause).__name__}: {cause}")
        self.step = step
        self.cause = cause


class VerificationFailedError(RollbackError):
    def __init__(self, environment: str, url: str, attempts: int, last_observation: str | None = None) -> None:
        message = (
            f"Rollback verification failed after {attempts} attempts - "
            f"application at {url} not responding correctly"
        )
        if last_observation:
            message = f"{message} (last: {last_observation})"
        super().__init__(environment, message)
        self.url = url
        self.attempts = attempts
