"""Error types for deployd."""


class DeploydError(Exception):
    """Base class for deployd errors."""


class LockContention(DeploydError):
    """A lease is held by another live process."""

    def __init__(self, name: str, owner_pid: int | None, message: str | None = None):
        self.name = name
        self.owner_pid = owner_pid
        super().__init__(message or f"Lease '{name}' is held by pid {owner_pid}")


class LeaseStale(DeploydError):
    """A lease names a process that is no longer running."""

    def __init__(self, name: str, owner_pid: int):
        self.name = name
        self.owner_pid = owner_pid
        super().__init__(f"Lease '{name}' belongs to dead pid {owner_pid}")


class LeaseIntegrityError(DeploydError):
    """Lease content changed under its confirmed owner."""


class StepFailure(DeploydError):
    """A pipeline step failed or timed out."""

    def __init__(
        self,
        step: str,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        path: str | None = None,
    ):
        self.step = step
        self.command = command
        self.exit_code = exit_code
        self.path = path
        details = []
        if command:
            details.append(f"command={command!r}")
        if exit_code is not None:
            details.append(f"exit_code={exit_code}")
        if path:
            details.append(f"path={path}")
        suffix = f" ({', '.join(details)})" if details else ""
        super().__init__(f"{step}: {message}{suffix}")


class RunAborted(DeploydError):
    """A pipeline run stopped because a newer run superseded it."""

    def __init__(self, run_id: str, superseded_by: str | None = None):
        self.run_id = run_id
        self.superseded_by = superseded_by
        super().__init__(f"Pipeline {run_id} aborted (superseded by {superseded_by})")


class SupervisionFailure(DeploydError):
    """A supervised process could not be started or stopped."""

    def __init__(self, message: str, pid: int | None = None):
        self.pid = pid
        super().__init__(message)


class ControlPlaneUnreachable(DeploydError):
    """A daemon's control plane refused the connection."""

    def __init__(self, role: str, url: str):
        self.role = role
        self.url = url
        super().__init__(f"The {role} control plane is unreachable at {url}")


class PortUnavailable(DeploydError):
    """The control plane port could not be taken over."""

    def __init__(self, port: int, attempts: int):
        self.port = port
        self.attempts = attempts
        super().__init__(f"Port {port} still in use after {attempts} attempts")
