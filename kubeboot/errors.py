"""Error taxonomy shared by every bootstrap component.

Every fatal error carries the component that raised it and the step that
failed, so the message printed to the operator always says what broke and
which command to re-run.
"""
from typing import Optional


class BootstrapError(Exception):
    """Base class for fatal bootstrap failures."""

    def __init__(self, message: str, component: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.component = component
        self.step = step

    def __str__(self) -> str:
        parts = []
        if self.step:
            parts.append(f"[{self.step}]")
        parts.append(self.message)
        if self.component:
            parts.append(f"(re-run: kubeboot {self.component})")
        return " ".join(parts)


class PrerequisiteError(BootstrapError):
    """Missing privilege, binary or mount. Never retried."""

    def __init__(self, message: str, remediation: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.remediation = remediation

    def __str__(self) -> str:
        base = super().__str__()
        if self.remediation:
            return f"{base}. Remediation: {self.remediation}"
        return base


class CommandError(BootstrapError):
    """A host command exited non-zero."""

    def __init__(self, message: str, returncode: int = 1, output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.output = output


class TransientReadinessError(BootstrapError):
    """Something is not responding yet. Retried until the budget runs out."""


class ReadinessTimeoutError(TransientReadinessError):
    """The retry budget of a readiness wait was exhausted."""

    def __init__(self, message: str, attempts: int = 0, elapsed: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.elapsed = elapsed


class JoinTimeoutError(ReadinessTimeoutError):
    """No join credential appeared in the rendezvous channel in time."""


class MalformedHandoffError(BootstrapError):
    """The rendezvous artifact is present but not a valid join command."""


class RendezvousUnavailable(BootstrapError):
    """The shared store backing the rendezvous channel is not mounted."""


class PartialConvergenceWarning(UserWarning):
    """Pods did not all become ready inside a soft timeout."""
