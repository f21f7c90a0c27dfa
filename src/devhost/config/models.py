# src/devhost/config/models.py

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl

Variant = Literal["regular", "ipv6", "gpu-pod", "plain"]


DEFAULT_EXTENSIONS = [
    "dbaeumer.vscode-eslint",
    "esbenp.prettier-vscode",
    "mtxr.sqltools",
    "yzhang.markdown-all-in-one",
    "DavidAnson.vscode-markdownlint",
    "redhat.vscode-yaml",
    "ms-azuretools.vscode-docker",
    "eamodio.gitlens",
    "streetsidesoftware.code-spell-checker",
]

DEFAULT_EDITOR_SETTINGS = {
    "workbench.colorTheme": "Default Dark Modern",
    "editor.fontSize": 14,
    "editor.tabSize": 2,
    "editor.insertSpaces": True,
    "editor.formatOnSave": True,
    "editor.minimap.enabled": True,
    "files.autoSave": "afterDelay",
    "files.autoSaveDelay": 1000,
    "terminal.integrated.fontSize": 13,
    "workbench.startupEditor": "none",
    "explorer.confirmDelete": False,
    "explorer.confirmDragAndDrop": False,
}


class TargetSpec(BaseModel):
    """Where the commands run. ``address=None`` means this machine."""
    address: Optional[str] = None
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    pkey_path: Optional[Path] = None
    connect_attempts: int = 30
    connect_delay_seconds: int = 20
    command_timeout_seconds: int = 1800


class UserSpec(BaseModel):
    # None -> SUDO_USER when present, otherwise ``fallback_name``
    name: Optional[str] = None
    fallback_name: str = "deploy"


class NodeSpec(BaseModel):
    nvm_version: str = "v0.39.7"
    install_pnpm: bool = True


class EditorSpec(BaseModel):
    enabled: bool = True
    port: Optional[int] = None          # default depends on the variant
    bind_host: Optional[str] = None     # default depends on the variant
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    settings: Dict = Field(default_factory=lambda: dict(DEFAULT_EDITOR_SETTINGS))
    password: Optional[str] = None
    max_probe_attempts: int = 30
    probe_interval_seconds: float = 1.0


class DatabaseSpec(BaseModel):
    name: str = "devdb"
    user: str = "postgres"
    password: Optional[str] = None
    port: int = 5432
    max_probe_attempts: int = 30
    probe_interval_seconds: float = 1.0


class CacheSpec(BaseModel):
    port: int = 6379
    config_path: str = "/etc/redis/redis.conf"
    max_probe_attempts: int = 10
    probe_interval_seconds: float = 1.0


class ProxySpec(BaseModel):
    basic_auth_user: str = "vscode-admin"
    basic_auth_password: Optional[str] = None
    cert_days: int = 365
    max_probe_attempts: int = 10
    probe_interval_seconds: float = 1.0


class TunnelSpec(BaseModel):
    name: str = "my-dev-tunnel"
    hostname: Optional[str] = None


class RepositorySpec(BaseModel):
    url: HttpUrl
    username: Optional[str] = None
    token: Optional[str] = None
    email: Optional[str] = None


class PolicySpec(BaseModel):
    # abort the run on the first service that cannot be made ready
    fail_fast_services: bool = False
    # non-zero exit when any service failed
    strict: bool = False


class SetupConfig(BaseModel):
    variant: Variant = "regular"
    target: TargetSpec = TargetSpec()
    user: UserSpec = UserSpec()
    node: NodeSpec = NodeSpec()
    editor: EditorSpec = EditorSpec()
    database: DatabaseSpec = DatabaseSpec()
    cache: CacheSpec = CacheSpec()
    proxy: ProxySpec = ProxySpec()
    tunnel: TunnelSpec = TunnelSpec()
    repository: Optional[RepositorySpec] = None
    policy: PolicySpec = PolicySpec()
    # IPv6 hosts only; used when every autodetection step came back empty
    server_address: Optional[str] = None
    extra_packages: List[str] = Field(default_factory=list)
