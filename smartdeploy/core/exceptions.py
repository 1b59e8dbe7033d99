"""Custom exceptions for SmartDeploy."""

from typing import Any


class SmartDeployError(Exception):
    """Base exception for SmartDeploy."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class TransientError(SmartDeployError):
    """Throttling or a resource that is not available yet. Safe to retry."""

    pass


class ConflictError(SmartDeployError):
    """Resource exists under a different owner, or a hostname collision."""

    pass


class ConfigurationError(SmartDeployError):
    """Invalid configuration for the chosen platform. Never retried."""

    pass


class ConvergenceTimeoutError(SmartDeployError):
    """A polled resource never reached its terminal state."""

    def __init__(self, description: str, attempts: int, last_message: str | None = None):
        details: dict[str, Any] = {"attempts": attempts}
        if last_message:
            details["last_message"] = last_message
        super().__init__(
            f"Timed out waiting for {description} after {attempts} attempts",
            details,
        )
        self.description = description
        self.attempts = attempts


class CloudOperationError(SmartDeployError):
    """A cloud API call failed with a non-retryable error."""

    def __init__(self, service: str, operation: str, code: str, message: str):
        super().__init__(
            f"{service}.{operation} failed ({code}): {message}",
            {"service": service, "operation": operation, "code": code},
        )
        self.service = service
        self.operation = operation
        self.code = code


class StepFailedError(SmartDeployError):
    """A deployment step failed."""

    def __init__(self, step: str, message: str):
        super().__init__(f"Step '{step}' failed: {message}", {"step": step})
        self.step = step


class DeploymentNotFoundError(SmartDeployError):
    """Deployment record not found."""

    def __init__(self, deployment_id: str):
        super().__init__(
            f"Deployment not found: {deployment_id}",
            {"deployment_id": deployment_id},
        )
