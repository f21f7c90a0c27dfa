# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/bootstrap/packages.py

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from devhost.bootstrap.host.models import RunContext
from devhost.errors import PackageInstallError
from devhost.execution.shell import Shell, shq
from devhost.observers.dispatcher import EventBus
from devhost.observers.events import new_ctx, PackagesInstalled

log = logging.getLogger("devhost")

APT_ENV = "DEBIAN_FRONTEND=noninteractive"
APT_OPTS = '-o Dpkg::Options::="--force-confdef" -o Dpkg::Options::="--force-confold"'

DEBCONF_SELECTIONS = [
    "libc6 libraries/restart-without-asking boolean true",
    "openssh-server openssh-server/permit-root-login boolean true",
]

BASE_PACKAGES = ["curl", "wget", "git", "build-essential", "ca-certificates", "gnupg", "lsb-release"]
PROXY_PACKAGES = ["nginx", "certbot", "python3-certbot-nginx", "apache2-utils"]
DATA_PACKAGES = ["postgresql", "postgresql-contrib", "redis-server"]
DOCKER_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]

CODE_SERVER_INSTALL_URL = "https://code-server.dev/install.sh"
CLOUDFLARED_DEB_URL = (
    "https://github.com/cloudflare/cloudflared/releases/latest/download/cloudflared-linux-amd64.deb"
)
CLOUDFLARED_KEY_URL = "https://pkg.cloudflare.com/cloudflare-public-v2.gpg"
MARKETPLACE_ENV = (
    "export SERVICE_URL=https://marketplace.visualstudio.com/_apis/public/gallery; "
    "export ITEM_URL=https://marketplace.visualstudio.com/items; "
)


class PackageManager:
    """
    The OS package collaborator. Every failure here is fatal for the run:
    a PackageInstallError propagates straight out of the setup manager.
    """

    def __init__(
        self,
        shell: Shell,
        run_ctx: RunContext,
        *,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[Dict] = None,
    ):
        self.shell = shell
        self.run_ctx = run_ctx
        self.bus = bus or EventBus()
        self.event_ctx = event_ctx or new_ctx(run_ctx.variant, None)

    def _must(self, cmd: str, packages: Iterable[str]) -> None:
        res = self.shell.run(cmd)
        if not res.ok:
            raise PackageInstallError(packages, res.rc, res.stderr)

    # ------------------ apt ------------------

    def preseed(self) -> None:
        for line in DEBCONF_SELECTIONS:
            self._must(f"echo {shq(line)} | debconf-set-selections", ["debconf"])

    def update(self) -> None:
        self._must(f"{APT_ENV} apt-get update", ["apt-get update"])

    def upgrade(self) -> None:
        self._must(f"{APT_ENV} apt-get upgrade -y {APT_OPTS}", ["apt-get upgrade"])

    def ensure_installed(self, packages: List[str]) -> None:
        if not packages:
            return
        log.info("Installing packages: %s", " ".join(packages))
        self._must(f"{APT_ENV} apt-get install -y {APT_OPTS} {' '.join(packages)}", packages)
        self.bus.emit(PackagesInstalled(packages=list(packages), **self.event_ctx))

    def system_base(self, extra: List[str]) -> None:
        self.preseed()
        self.update()
        self.upgrade()
        self.ensure_installed(BASE_PACKAGES + extra)

    # ------------------ third-party repos ------------------

    def docker(self) -> None:
        os_id = self.run_ctx.os_id
        codename = self.run_ctx.os_codename or "$(lsb_release -cs)"
        repo = (
            f"deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] "
            f"https://download.docker.com/linux/{os_id} {codename} stable"
        )
        cmd = (
            "rm -f /etc/apt/sources.list.d/docker.list /etc/apt/keyrings/docker.gpg && "
            "install -m 0755 -d /etc/apt/keyrings && "
            f"curl -fsSL https://download.docker.com/linux/{os_id}/gpg | gpg --dearmor -o /etc/apt/keyrings/docker.gpg && "
            "chmod a+r /etc/apt/keyrings/docker.gpg && "
            f'echo "{repo}" > /etc/apt/sources.list.d/docker.list'
        )
        self._must(cmd, ["docker repository"])
        self.update()
        self.ensure_installed(DOCKER_PACKAGES)
        self._must(f"usermod -aG docker {self.run_ctx.user}", ["docker group"])

    def cloudflared_deb(self) -> None:
        cmd = (
            "command -v cloudflared >/dev/null || ("
            f"curl -fL --output /tmp/cloudflared.deb {CLOUDFLARED_DEB_URL} && "
            "dpkg -i /tmp/cloudflared.deb; rc=$?; rm -f /tmp/cloudflared.deb; exit $rc)"
        )
        self._must(cmd, ["cloudflared"])

    def cloudflared_apt(self) -> None:
        cmd = (
            "mkdir -p --mode=0755 /usr/share/keyrings && "
            f"curl -fsSL {CLOUDFLARED_KEY_URL} | tee /usr/share/keyrings/cloudflare-public-v2.gpg >/dev/null && "
            "echo 'deb [signed-by=/usr/share/keyrings/cloudflare-public-v2.gpg] "
            "https://pkg.cloudflare.com/cloudflared any main' > /etc/apt/sources.list.d/cloudflared.list"
        )
        self._must(cmd, ["cloudflared repository"])
        self.update()
        self.ensure_installed(["cloudflared"])

    # ------------------ user toolchain ------------------

    def node(self, nvm_version: str) -> None:
        ctx = self.run_ctx
        script = (
            f"curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/{nvm_version}/install.sh | bash && "
            + ctx.with_nvm("nvm install --lts && nvm use --lts && nvm alias default 'lts/*'")
        )
        self._must(ctx.as_user(script), ["nvm", "node"])

    def pnpm(self) -> None:
        ctx = self.run_ctx
        self._must(ctx.as_user(ctx.with_nvm("npm install -g pnpm")), ["pnpm"])

    def code_server(self) -> None:
        self._must(
            f"command -v code-server >/dev/null || (curl -fsSL {CODE_SERVER_INSTALL_URL} | sh)",
            ["code-server"],
        )

    def editor_extensions(self, extensions: List[str]) -> None:
        if not extensions:
            return
        installs = " && ".join(f"code-server --install-extension {shq(ext)}" for ext in extensions)
        self._must(self.run_ctx.as_user(MARKETPLACE_ENV + installs), extensions)
