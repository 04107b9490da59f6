from __future__ import annotations

from typing import Sequence


class DeployError(RuntimeError):
    """Base class for fatal deployment errors."""


class PrivilegeError(DeployError):
    pass


class CommandFailed(DeployError):
    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Command failed ({returncode}): {' '.join(self.argv)}\n{stderr}".rstrip())


class MissingComponent(DeployError):
    def __init__(self, component: str, detail: str = "") -> None:
        self.component = component
        msg = f"Bundle is missing required component: {component}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class InstallationFailed(DeployError):
    pass


class ServiceStartTimeout(DeployError):
    def __init__(self, unit: str, attempts: int, diagnostics: str = "") -> None:
        self.unit = unit
        self.attempts = attempts
        self.diagnostics = diagnostics
        super().__init__(f"{unit} did not become active after {attempts} checks")


class NoModelsFound(DeployError):
    pass


class ModelStoreIncomplete(DeployError):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Model manifests reference missing blobs: {', '.join(self.missing)}")


class ModelIndexTimeout(DeployError):
    pass


class ConfigValidationFailed(DeployError):
    pass
