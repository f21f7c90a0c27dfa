# src/devhost/bootstrap/services/catalog.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from devhost.bootstrap.host.models import RunContext
from devhost.config.models import SetupConfig
from devhost.execution.shell import Shell, shq

from .models import (
    BackgroundNohup,
    ForegroundDaemonize,
    InitAction,
    ServiceSpec,
    SystemdUnit,
)
from .probes import CommandProbe, HttpProbe

POSTGRES_LOG = "/tmp/postgres.log"


@dataclass(frozen=True)
class PostgresLayout:
    version: str

    @property
    def data_dir(self) -> str:
        return f"/var/lib/postgresql/{self.version}/main"

    @property
    def bin_dir(self) -> str:
        return f"/usr/lib/postgresql/{self.version}/bin"

    @property
    def conf_dir(self) -> str:
        return f"/etc/postgresql/{self.version}/main"


def detect_postgres_version(shell: Shell) -> Optional[str]:
    res = shell.run("ls /etc/postgresql/ 2>/dev/null | sort -V | tail -n1", mutating=False)
    version = res.stdout.strip()
    return version or None


# ---------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------
def _psql(ctx: RunContext, layout: PostgresLayout, sql: str, flags: str = "") -> str:
    args = " ".join(p for p in (f"{layout.bin_dir}/psql", flags, f"-c {shq(sql)}") if p)
    return ctx.as_user(args, user="postgres")


# pg_hba lines switched from peer/scram to md5. ``local all postgres peer`` is
# left alone so the postgres account can still probe and manage the cluster.
_PG_HBA_EDITS = [
    (
        r"local   all             all                                     peer",
        r"local   all             all                                     md5",
    ),
    (
        r"host    all             all             127.0.0.1\/32            scram-sha-256",
        r"host    all             all             127.0.0.1\/32            md5",
    ),
]


def postgres_spec(
    shell: Shell,
    ctx: RunContext,
    cfg: SetupConfig,
    layout: PostgresLayout,
    password: str,
) -> ServiceSpec:
    db = cfg.database

    def marker() -> bool:
        sql = f"SELECT 1 FROM pg_database WHERE datname='{db.name}'"
        res = shell.run(_psql(ctx, layout, sql, flags="-tA"), mutating=False)
        if not res.ok:
            raise RuntimeError(f"cannot query pg_database: {res.stderr.strip()}")
        return res.stdout.strip() == "1"

    def initialize() -> None:
        # CREATE DATABASE creates the marker, so it runs last
        hba = f"{layout.conf_dir}/pg_hba.conf"
        shell.run(f"[ -f {hba}.backup ] || cp {hba} {hba}.backup", check=True)
        for old, new in _PG_HBA_EDITS:
            shell.run(f"sed -i 's/{old}/{new}/' {hba}", check=True)

        if ctx.has_systemd:
            shell.run("systemctl reload postgresql", check=True)
        else:
            shell.run(ctx.as_user(f"{layout.bin_dir}/pg_ctl -D {layout.data_dir} reload", user="postgres"), check=True)

        shell.run(_psql(ctx, layout, f"ALTER USER {db.user} WITH PASSWORD '{password}';"), check=True)
        shell.run(_psql(ctx, layout, f"CREATE DATABASE {db.name};"), check=True)

    server = (
        f"{layout.bin_dir}/postgres -D {layout.data_dir} "
        f"-c config_file={layout.conf_dir}/postgresql.conf"
    )
    return ServiceSpec(
        name="postgresql",
        systemd=SystemdUnit("postgresql"),
        manual=BackgroundNohup(command=server, log_path=POSTGRES_LOG, user="postgres"),
        probe=CommandProbe(shell, _psql(ctx, layout, "SELECT 1;")),
        process_pattern="postgres -D",
        init_action=InitAction(
            description=f"setting {db.user} password and creating database {db.name}",
            marker_name=f"database {db.name}",
            marker=marker,
            action=initialize,
        ),
        max_probe_attempts=db.max_probe_attempts,
        probe_interval_seconds=db.probe_interval_seconds,
        fallback_command=f"command -v pg_ctlcluster >/dev/null && pg_ctlcluster {layout.version} main start",
        log_paths=[POSTGRES_LOG, f"{layout.data_dir}/logfile"],
        port=db.port,
        prepare=[
            "chown -R postgres:postgres /var/lib/postgresql",
            f"chmod 700 {layout.data_dir} 2>/dev/null || true",
            "mkdir -p /var/run/postgresql && chown postgres:postgres /var/run/postgresql && chmod 2775 /var/run/postgresql",
        ],
        guard_script="/usr/local/bin/start-postgres.sh",
    )


# ---------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------
def redis_spec(shell: Shell, cfg: SetupConfig) -> ServiceSpec:
    cache = cfg.cache
    conf = cache.config_path
    launch = (
        f"if [ -f {conf} ]; then redis-server {conf} --daemonize yes; "
        f"else redis-server --daemonize yes; fi"
    )
    return ServiceSpec(
        name="redis",
        systemd=SystemdUnit("redis-server"),
        manual=ForegroundDaemonize(launch),
        probe=CommandProbe(shell, f"redis-cli -p {cache.port} ping | grep -q PONG"),
        process_pattern="redis-server",
        max_probe_attempts=cache.max_probe_attempts,
        probe_interval_seconds=cache.probe_interval_seconds,
        log_paths=["/var/log/redis/redis-server.log"],
        port=cache.port,
        guard_script="/usr/local/bin/start-redis.sh",
    )


# ---------------------------------------------------------------------
# Docker engine
# ---------------------------------------------------------------------
def docker_spec(shell: Shell) -> ServiceSpec:
    return ServiceSpec(
        name="docker",
        systemd=SystemdUnit("docker"),
        manual=BackgroundNohup(command="dockerd", log_path="/var/log/dockerd.log"),
        probe=CommandProbe(shell, "docker info > /dev/null 2>&1"),
        process_pattern="dockerd",
        max_probe_attempts=15,
        probe_interval_seconds=2.0,
        log_paths=["/var/log/dockerd.log"],
        guard_script="/usr/local/bin/start-docker.sh",
    )


# ---------------------------------------------------------------------
# code-server
# ---------------------------------------------------------------------
def editor_spec(shell: Shell, ctx: RunContext, cfg: SetupConfig, port: int, config_path: str) -> ServiceSpec:
    log_path = f"{ctx.user_home}/code-server.log"
    command = ctx.with_nvm(f"exec /usr/bin/code-server --config {config_path}")
    return ServiceSpec(
        name="code-server",
        systemd=SystemdUnit("code-server", daemon_reload=True, restart=True),
        manual=BackgroundNohup(command=f"bash -c {shq(command)}", log_path=log_path, user=ctx.user),
        probe=CommandProbe(shell, f"curl -s -o /dev/null http://127.0.0.1:{port}/healthz"),
        process_pattern="code-server --config",
        max_probe_attempts=cfg.editor.max_probe_attempts,
        probe_interval_seconds=cfg.editor.probe_interval_seconds,
        log_paths=[log_path],
        port=port,
        guard_script=f"{ctx.user_home}/start-code-server.sh",
        guard_owner=ctx.user,
        login_hook=True,
    )


# ---------------------------------------------------------------------
# nginx
# ---------------------------------------------------------------------
def _on_host_https_check(url: str) -> str:
    """Shell test that passes when ``url`` answers with a status below 500."""
    return (
        f"code=$(curl -gsk -o /dev/null -w '%{{http_code}}' --max-time 5 {shq(url)}); "
        f'[ "$code" -gt 0 ] && [ "$code" -lt 500 ]'
    )


def proxy_spec(shell: Shell, ctx: RunContext, cfg: SetupConfig) -> ServiceSpec:
    url = f"https://{ctx.url_host}/"
    # remote targets are checked from the host itself, not across the operator's network
    if cfg.target.address:
        probe = CommandProbe(shell, _on_host_https_check(url))
    else:
        probe = HttpProbe(url)
    return ServiceSpec(
        name="nginx",
        systemd=SystemdUnit("nginx", restart=True),
        manual=ForegroundDaemonize("nginx"),
        probe=probe,
        process_pattern="nginx: master",
        max_probe_attempts=cfg.proxy.max_probe_attempts,
        probe_interval_seconds=cfg.proxy.probe_interval_seconds,
        log_paths=["/var/log/nginx/error.log"],
        port=443,
        guard_script="/usr/local/bin/start-nginx.sh",
    )
