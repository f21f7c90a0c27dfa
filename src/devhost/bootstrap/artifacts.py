# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/bootstrap/artifacts.py

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Tuple

import yaml

from devhost.bootstrap.credentials import htpasswd_line
from devhost.bootstrap.host.models import RunContext
from devhost.bootstrap.template_renderer import TemplateRenderer
from devhost.errors import ArtifactError
from devhost.execution.shell import CommandError, Shell, shq
from devhost.observers.dispatcher import EventBus
from devhost.observers.events import new_ctx, ArtifactPlaced

log = logging.getLogger("devhost")

NGINX_SITE = "/etc/nginx/sites-available/vscode"
NGINX_SITE_LINK = "/etc/nginx/sites-enabled/vscode"
NGINX_DEFAULT_SITE = "/etc/nginx/sites-enabled/default"
NGINX_SSL_DIR = "/etc/nginx/ssl"
HTPASSWD_PATH = "/etc/nginx/.htpasswd"
CODE_SERVER_UNIT = "/etc/systemd/system/code-server.service"
RESOLV_CONF = "/etc/resolv.conf"
HOSTS_FILE = "/etc/hosts"

IPV6_NAMESERVERS = [
    "2606:4700:4700::64",
    "2001:4860:4860::64",
    "2606:4700:4700::1111",
    "2001:4860:4860::8888",
]

GITHUB_PROXY_BEGIN = "# GitHub IPv6 Proxy (danwin1210.de)"
GITHUB_PROXY_END = "# End GitHub IPv6 Proxy"
GITHUB_IPV6_PROXY: List[Tuple[str, List[str]]] = [
    ("2a01:4f8:c010:d56::2", ["github.com"]),
    ("2a01:4f8:c010:d56::3", ["api.github.com"]),
    ("2a01:4f8:c010:d56::4", ["codeload.github.com"]),
    ("2a01:4f8:c010:d56::6", ["ghcr.io"]),
    ("2a01:4f8:c010:d56::7", [
        "pkg.github.com", "npm.pkg.github.com", "maven.pkg.github.com",
        "nuget.pkg.github.com", "rubygems.pkg.github.com",
    ]),
    ("2a01:4f8:c010:d56::8", ["uploads.github.com"]),
    ("2606:50c0:8000::133", [
        "objects.githubusercontent.com", "www.objects.githubusercontent.com",
        "release-assets.githubusercontent.com", "gist.githubusercontent.com",
        "repository-images.githubusercontent.com", "camo.githubusercontent.com",
        "private-user-images.githubusercontent.com", "avatars0.githubusercontent.com",
        "avatars1.githubusercontent.com", "avatars2.githubusercontent.com",
        "avatars3.githubusercontent.com", "cloud.githubusercontent.com",
        "desktop.githubusercontent.com", "support.github.com",
    ]),
    ("2606:50c0:8000::154", [
        "support-assets.githubassets.com", "github.githubassets.com",
        "opengraph.githubassets.com", "github-registry-files.githubusercontent.com",
        "github-cloud.githubusercontent.com",
    ]),
]


class ArtifactWriter:
    """
    Renders configuration files and places them at fixed paths on the host.
    Nothing written here is read back by the bootstrapper.
    """

    def __init__(
        self,
        shell: Shell,
        run_ctx: RunContext,
        *,
        renderer: Optional[TemplateRenderer] = None,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[Dict] = None,
    ):
        self.shell = shell
        self.run_ctx = run_ctx
        self.renderer = renderer or TemplateRenderer()
        self.bus = bus or EventBus()
        self.event_ctx = event_ctx or new_ctx(run_ctx.variant, None)

    @property
    def _user_owner(self) -> str:
        return f"{self.run_ctx.user}:{self.run_ctx.user}"

    def place(self, path: str, content: str, *, mode: int = 0o644, owner: Optional[str] = None) -> str:
        try:
            self.shell.put_text(content, path, mode=mode, owner=owner)
        except CommandError as e:
            raise ArtifactError(f"could not write {path}: {e}") from e
        self.bus.emit(ArtifactPlaced(path=path, **self.event_ctx))
        return path

    def _run(self, cmd: str) -> None:
        try:
            self.shell.run(cmd, check=True)
        except CommandError as e:
            raise ArtifactError(str(e)) from e

    # ------------------ editor ------------------

    def editor_config_path(self) -> str:
        return f"{self.run_ctx.user_home}/.config/code-server/config.yaml"

    def existing_editor_password(self) -> Optional[str]:
        """The password in a config.yaml left by an earlier run, if there is one."""
        path = self.editor_config_path()
        res = self.shell.run(f"cat {shq(path)} 2>/dev/null", mutating=False)
        if not res.ok or not res.stdout.strip():
            return None
        try:
            data = yaml.safe_load(res.stdout)
        except yaml.YAMLError as e:
            log.warning("ignoring unreadable %s: %s", path, e)
            return None
        if isinstance(data, dict) and data.get("password"):
            return str(data["password"])
        return None

    def editor_config(self, bind_host: str, port: int, password: str) -> str:
        content = yaml.safe_dump(
            {
                "bind-addr": f"{bind_host}:{port}",
                "auth": "password",
                "password": password,
                "cert": False,
            },
            sort_keys=False,
        )
        return self.place(self.editor_config_path(), content, mode=0o600, owner=self._user_owner)

    def editor_settings(self, settings: Dict) -> str:
        path = f"{self.run_ctx.user_home}/.local/share/code-server/User/settings.json"
        return self.place(path, json.dumps(settings, indent=2) + "\n", owner=self._user_owner)

    def editor_unit(self) -> str:
        content = self.renderer.render(
            "code-server.service.j2",
            {
                "user": self.run_ctx.user,
                "home": self.run_ctx.user_home,
                "config_path": self.editor_config_path(),
            },
        )
        return self.place(CODE_SERVER_UNIT, content)

    # ------------------ reverse proxy ------------------

    def basic_auth(self, user: str, password: str) -> str:
        return self.place(HTPASSWD_PATH, htpasswd_line(user, password), mode=0o640, owner="root:www-data")

    def tls_certificate(self, days: int = 365) -> Tuple[str, str]:
        """
        Self-signed certificate whose SAN is the detected address.
        Kept across runs as long as it names the same address.
        """
        cert = f"{NGINX_SSL_DIR}/cert.pem"
        key = f"{NGINX_SSL_DIR}/key.pem"
        address = self.run_ctx.address
        subj = f"/C=US/ST=State/L=City/O=Organization/CN={address}"
        cmd = (
            f"mkdir -p {NGINX_SSL_DIR} && "
            f"if ! openssl x509 -in {cert} -noout -text 2>/dev/null | grep -qF {shq('IP Address:' + address)}; then "
            f"openssl req -x509 -nodes -days {days} -newkey rsa:2048 "
            f"-keyout {key} -out {cert} -subj {shq(subj)} "
            f"-addext {shq('subjectAltName=IP:' + address)}; "
            f"fi && chmod 600 {key}"
        )
        self._run(cmd)
        self.bus.emit(ArtifactPlaced(path=cert, **self.event_ctx))
        return cert, key

    def nginx_site(self, upstream_port: int, cert: str, key: str) -> str:
        content = self.renderer.render(
            "nginx-vscode.conf.j2",
            {
                "cert_path": cert,
                "key_path": key,
                "htpasswd_path": HTPASSWD_PATH,
                "upstream_host": "127.0.0.1",
                "upstream_port": upstream_port,
            },
        )
        self.place(NGINX_SITE, content)
        self._run(f"ln -sf {NGINX_SITE} {NGINX_SITE_LINK} && rm -f {NGINX_DEFAULT_SITE}")
        try:
            self.shell.run("nginx -t", check=True)
        except CommandError as e:
            raise ArtifactError(f"nginx rejected the generated site: {e}") from e
        return NGINX_SITE

    # ------------------ ipv6 networking ------------------

    def ipv6_resolvers(self) -> str:
        self._run(f"[ -f {RESOLV_CONF} ] && cp {RESOLV_CONF} {RESOLV_CONF}.backup.$(date +%Y%m%d_%H%M%S) || true")
        content = self.renderer.render("resolv.conf.j2", {"nameservers": IPV6_NAMESERVERS})
        return self.place(RESOLV_CONF, content)

    def github_proxy_hosts(self) -> str:
        """Replace the delimited proxy block in /etc/hosts (no duplicates across runs)."""
        block = self.renderer.render(
            "github-ipv6-hosts.j2",
            {
                "begin_marker": GITHUB_PROXY_BEGIN,
                "end_marker": GITHUB_PROXY_END,
                "entries": GITHUB_IPV6_PROXY,
            },
        )
        begin = GITHUB_PROXY_BEGIN.split(" (")[0].replace("/", "\\/")
        end = GITHUB_PROXY_END.replace("/", "\\/")
        self._run(f"sed -i '/{begin}/,/{end}/d' {HOSTS_FILE}")
        self._run(f"printf '%s' {shq(block)} >> {HOSTS_FILE}")
        self.bus.emit(ArtifactPlaced(path=HOSTS_FILE, **self.event_ctx))
        return HOSTS_FILE

    # ------------------ misc user files ------------------

    def tunnel_config(self, tunnel: str, hostname: str, port: int) -> str:
        path = f"{self.run_ctx.user_home}/.cloudflared/config.yml"
        content = self.renderer.render(
            "cloudflared-config.yml.j2",
            {"tunnel": tunnel, "hostname": hostname, "port": port, "home": self.run_ctx.user_home},
        )
        return self.place(path, content, owner=self._user_owner)

    def nvim_config(self) -> str:
        path = f"{self.run_ctx.user_home}/.config/nvim/init.vim"
        return self.place(path, self.renderer.render("nvim-init.vim.j2", {}), owner=self._user_owner)
