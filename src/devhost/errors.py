# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/errors.py


class SetupError(RuntimeError):
    """Fatal: aborts the whole run."""


class PrerequisiteError(SetupError):
    """Raised when the host cannot be provisioned at all (privilege, missing tools)."""


class OsDetectionError(SetupError):
    pass


class AddressDetectionError(SetupError):
    pass


class PackageInstallError(SetupError):
    def __init__(self, packages, rc: int, stderr: str = ""):
        self.packages = list(packages)
        self.rc = rc
        self.stderr = stderr
        super().__init__(
            f"package installation failed (rc={rc}): {' '.join(self.packages)}"
        )


class ArtifactError(SetupError):
    """Raised when a generated file cannot be placed or fails validation."""


class ServiceError(RuntimeError):
    """Recoverable: recorded against one service, the run continues."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"[{service}] {message}")


class StartFailed(ServiceError):
    pass


class ReadinessTimeout(ServiceError):
    pass


class InitActionFailed(ServiceError):
    pass
