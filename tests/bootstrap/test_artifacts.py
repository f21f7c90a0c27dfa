import json

import bcrypt
import pytest
import yaml

from devhost.bootstrap.artifacts import (
    CODE_SERVER_UNIT,
    GITHUB_PROXY_BEGIN,
    GITHUB_PROXY_END,
    HOSTS_FILE,
    HTPASSWD_PATH,
    NGINX_SITE,
    RESOLV_CONF,
    ArtifactWriter,
)
from devhost.bootstrap.credentials import generate_password, htpasswd_line
from devhost.bootstrap.host.models import AddressFamily, InitStrategy, RunContext, UserSwitch
from devhost.errors import ArtifactError
from devhost.execution.shell import CommandError, CommandResult
from devhost.observers.dispatcher import EventBus
from devhost.observers.events import ArtifactPlaced


class RecordingShell:
    def __init__(self, fail_on=None):
        self.commands = []
        self.files = {}
        self.fail_on = fail_on

    def run(self, cmd, *, check=False, mutating=True, timeout=None):
        self.commands.append(cmd)
        res = CommandResult(0)
        if self.fail_on and self.fail_on in cmd:
            res = CommandResult(1, stderr="nginx: [emerg] unexpected end of file")
        if check and not res.ok:
            raise CommandError(cmd, res)
        return res

    def put_text(self, content, path, *, mode=0o644, owner=None):
        self.files[path] = (content, mode, owner)

    def close(self):
        pass


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, e):
        self.events.append(e)


def make_ctx(address="203.0.113.7", variant="regular"):
    return RunContext(
        variant=variant,
        os_id="ubuntu",
        os_codename="jammy",
        init_strategy=InitStrategy.SYSTEMD,
        user_switch=UserSwitch.SUDO,
        address=address,
        address_family=AddressFamily.IPV6 if ":" in address else AddressFamily.IPV4,
        user="dev",
        user_home="/home/dev",
    )


@pytest.fixture
def writer():
    shell = RecordingShell()
    cap = Capture()
    w = ArtifactWriter(shell, make_ctx(), bus=EventBus([cap]))
    return w, shell, cap


def test_generated_password_shape():
    pw = generate_password()
    assert len(pw) == 24  # base64 of 16 bytes
    assert pw != generate_password()


def test_htpasswd_line_is_bcrypt():
    line = htpasswd_line("vscode-admin", "s3cret")
    user, hashed = line.rstrip("\n").split(":", 1)
    assert user == "vscode-admin"
    assert hashed.startswith("$2")
    assert bcrypt.checkpw(b"s3cret", hashed.encode())


def test_editor_config_is_private_to_user(writer):
    w, shell, cap = writer
    path = w.editor_config("127.0.0.1", 8080, "pw123")

    assert path == "/home/dev/.config/code-server/config.yaml"
    content, mode, owner = shell.files[path]
    assert yaml.safe_load(content) == {
        "bind-addr": "127.0.0.1:8080",
        "auth": "password",
        "password": "pw123",
        "cert": False,
    }
    assert mode == 0o600
    assert owner == "dev:dev"
    assert [e.path for e in cap.events if isinstance(e, ArtifactPlaced)] == [path]


class ConfigOnDisk(RecordingShell):
    def __init__(self, text, rc=0):
        super().__init__()
        self.text = text
        self.rc = rc

    def run(self, cmd, *, check=False, mutating=True, timeout=None):
        if cmd.startswith("cat "):
            self.commands.append(cmd)
            return CommandResult(self.rc, stdout=self.text)
        return super().run(cmd, check=check, mutating=mutating, timeout=timeout)


@pytest.mark.parametrize(
    "text, rc, expected",
    [
        ("bind-addr: 127.0.0.1:8080\nauth: password\npassword: old-pw\n", 0, "old-pw"),
        ("bind-addr: 127.0.0.1:8080\nauth: none\n", 0, None),
        ("password: [unclosed\n", 0, None),
        ("", 1, None),
    ],
)
def test_existing_editor_password(text, rc, expected):
    shell = ConfigOnDisk(text, rc)
    w = ArtifactWriter(shell, make_ctx())
    assert w.existing_editor_password() == expected
    assert shell.commands == ["cat '/home/dev/.config/code-server/config.yaml' 2>/dev/null"]


def test_editor_settings_and_unit(writer):
    w, shell, _ = writer
    settings = w.editor_settings({"editor.fontSize": 14})
    w.editor_unit()

    assert json.loads(shell.files[settings][0]) == {"editor.fontSize": 14}
    unit = shell.files[CODE_SERVER_UNIT][0]
    assert "User=dev" in unit
    assert "ExecStart=/usr/bin/code-server --config /home/dev/.config/code-server/config.yaml" in unit


def test_basic_auth_file_readable_by_nginx_only(writer):
    w, shell, _ = writer
    w.basic_auth("vscode-admin", "pw")
    content, mode, owner = shell.files[HTPASSWD_PATH]
    assert content.startswith("vscode-admin:$2")
    assert (mode, owner) == (0o640, "root:www-data")


def test_tls_certificate_san_is_the_host_address(writer):
    w, shell, _ = writer
    cert, key = w.tls_certificate(days=30)

    assert (cert, key) == ("/etc/nginx/ssl/cert.pem", "/etc/nginx/ssl/key.pem")
    cmd = shell.commands[-1]
    assert "-addext 'subjectAltName=IP:203.0.113.7'" in cmd
    assert "-days 30" in cmd
    # only regenerated when the existing cert names another address
    assert "grep -qF 'IP Address:203.0.113.7'" in cmd


def test_nginx_site_is_enabled_and_validated(writer):
    w, shell, _ = writer
    w.nginx_site(8080, "/etc/nginx/ssl/cert.pem", "/etc/nginx/ssl/key.pem")

    site = shell.files[NGINX_SITE][0]
    assert "proxy_pass http://127.0.0.1:8080;" in site
    assert "ssl_certificate /etc/nginx/ssl/cert.pem;" in site
    assert f"auth_basic_user_file {HTPASSWD_PATH};" in site
    # nginx variables survive rendering
    assert "return 301 https://$host$request_uri;" in site

    assert "ln -sf /etc/nginx/sites-available/vscode /etc/nginx/sites-enabled/vscode" in shell.commands[0]
    assert "rm -f /etc/nginx/sites-enabled/default" in shell.commands[0]
    assert shell.commands[-1] == "nginx -t"


def test_rejected_nginx_site_is_fatal():
    shell = RecordingShell(fail_on="nginx -t")
    w = ArtifactWriter(shell, make_ctx())
    with pytest.raises(ArtifactError, match="nginx rejected"):
        w.nginx_site(8080, "c", "k")


def test_failed_placement_is_artifact_error():
    class FailingShell(RecordingShell):
        def put_text(self, content, path, *, mode=0o644, owner=None):
            raise CommandError(f"install {path}", CommandResult(1, stderr="read-only file system"))

    w = ArtifactWriter(FailingShell(), make_ctx())
    with pytest.raises(ArtifactError, match="/etc/nginx/.htpasswd"):
        w.basic_auth("u", "p")


def test_ipv6_resolvers(writer):
    w, shell, _ = writer
    w.ipv6_resolvers()
    content = shell.files[RESOLV_CONF][0]
    assert content.splitlines()[1:3] == ["nameserver 2606:4700:4700::64", "nameserver 2001:4860:4860::64"]
    assert "cp /etc/resolv.conf /etc/resolv.conf.backup." in shell.commands[0]


def test_github_proxy_block_replaced_not_duplicated(writer):
    w, shell, _ = writer
    w.github_proxy_hosts()
    w.github_proxy_hosts()

    deletes = [c for c in shell.commands if c.startswith("sed -i")]
    appends = [c for c in shell.commands if c.startswith("printf")]
    assert len(deletes) == 2 and len(appends) == 2
    # every append is preceded by removing the previous block
    assert [c.split()[0] for c in shell.commands] == ["sed", "printf", "sed", "printf"]
    assert deletes[0] == f"sed -i '/# GitHub IPv6 Proxy/,/# End GitHub IPv6 Proxy/d' {HOSTS_FILE}"

    block = appends[0]
    assert GITHUB_PROXY_BEGIN in block
    assert GITHUB_PROXY_END in block
    assert "2a01:4f8:c010:d56::2 github.com" in block


def test_tunnel_config_points_at_editor_port(writer):
    w, shell, _ = writer
    path = w.tunnel_config("my-dev-tunnel", "dev.example.com", 8443)

    assert path == "/home/dev/.cloudflared/config.yml"
    cfg = yaml.safe_load(shell.files[path][0])
    assert cfg["tunnel"] == "my-dev-tunnel"
    assert cfg["credentials-file"] == "/home/dev/.cloudflared/my-dev-tunnel.json"
    assert cfg["ingress"][0] == {"hostname": "dev.example.com", "service": "http://localhost:8443"}
    assert cfg["ingress"][-1] == {"service": "http_status:404"}
