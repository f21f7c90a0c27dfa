# src/devhost/bootstrap/host/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from devhost.execution.shell import shq


class InitStrategy(str, Enum):
    SYSTEMD = "systemd"
    NO_SYSTEMD = "no-systemd"


class UserSwitch(str, Enum):
    SUDO = "sudo"
    SU = "su"


class AddressFamily(str, Enum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"


@dataclass(frozen=True)
class RunContext:
    """
    Everything detected about the host, fixed for the whole run.
    Built once by ``detect_host`` and handed to every step.
    """
    variant: str
    os_id: str
    os_codename: str
    init_strategy: InitStrategy
    user_switch: UserSwitch
    address: str
    address_family: AddressFamily
    user: str
    user_home: str

    @property
    def has_systemd(self) -> bool:
        return self.init_strategy is InitStrategy.SYSTEMD

    @property
    def url_host(self) -> str:
        """Address as it appears inside a URL (IPv6 gets brackets)."""
        if ":" in self.address:
            return f"[{self.address}]"
        return self.address

    def as_user(self, cmd: str, user: str | None = None) -> str:
        """Wrap *cmd* so it runs as *user* (default: the development user) with a login environment."""
        user = user or self.user
        if self.user_switch is UserSwitch.SUDO:
            return f"sudo -u {user} -H bash -lc {shq(cmd)}"
        return f"su - {user} -c {shq(cmd)}"

    def with_nvm(self, cmd: str) -> str:
        """Prefix *cmd* with the nvm environment of the development user."""
        return (
            f'export NVM_DIR="{self.user_home}/.nvm"; '
            f'[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"; {cmd}'
        )
