"""Shared fixtures: a scripted host and bundle builders.

FakeSystem stands in for every external command the deployer runs. It keeps
just enough state (users, units, firewall, audit rules, file owners) for the
phases to converge, and derives the service's model inventory from the staged
model store so copies are observable end to end.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests

from airgap_deployer.deploy_config import DeployConfig
from airgap_deployer.errors import CommandFailed
from airgap_deployer.lib import model_store
from airgap_deployer.lib.command import CmdResult
from airgap_deployer.lib.host import Host
from airgap_deployer.pipeline import DeployCtx

VERSION = "ollama version is 0.1.32"

DEFAULT_LISTEN = "127.0.0.1:11434"
MUTATING_SYSTEMCTL = {"daemon-reload", "enable", "disable", "start", "stop", "restart", "reload"}


class FakeSystem:
    def __init__(self, root: Path, cfg: DeployConfig) -> None:
        self.root = root
        self.cfg = cfg
        self.calls: List[List[str]] = []
        self.mutations: List[List[str]] = []
        self.sleeps: List[float] = []

        self.users = set()
        self.owners: Dict[str, str] = {}
        self.units: Dict[str, Dict[str, bool]] = {}
        self.installed_units = {"cups.service", "sshd.service", "firewalld.service"}
        self.never_active = set()

        self.version: Optional[str] = VERSION
        self.index_empty_polls = 0
        self.commands = {"ping", "sshd", "firewall-cmd", "getenforce", "restorecon", "auditctl"}
        self.sshd_valid = True
        self.default_zone = "public"
        self.zone_services: Dict[str, set] = {"public": {"ssh"}, "drop": set()}
        self.selinux = "Enforcing"
        self.labels_dirty = True
        self.audit_rules: List[str] = []
        self.online = False
        self.env: Dict[str, str] = {}

        self.set_unit("cups.service", enabled=True, active=True)
        self.set_unit("sshd.service", enabled=True, active=True)

    # wiring

    def host(self, *, dry_run: bool = False) -> Host:
        return Host(root=str(self.root), dry_run=dry_run, runner=self, which=self.which, sleep=self.sleep)

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.commands else None

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def set_unit(self, unit: str, *, enabled: Optional[bool] = None, active: Optional[bool] = None) -> None:
        u = self.units.setdefault(unit, {"enabled": False, "active": False})
        if enabled is not None:
            u["enabled"] = enabled
        if active is not None:
            u["active"] = active

    def unit(self, unit: str) -> Dict[str, bool]:
        return self.units.setdefault(unit, {"enabled": False, "active": False})

    def mutated(self, verb: str) -> List[List[str]]:
        return [m for m in self.mutations if verb in m]

    # runner protocol

    def __call__(self, argv, *, check=True, env=None, input_text=None, timeout=None, dry_run=False) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        self.env = dict(env or {})
        if dry_run:
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")
        rc, out, err = self._dispatch(argv)
        if check and rc != 0:
            raise CommandFailed(argv, rc, err)
        return CmdResult(argv=argv, returncode=rc, stdout=out, stderr=err)

    def _mutate(self, argv: List[str]) -> None:
        self.mutations.append(argv)

    def _dispatch(self, argv: List[str]):
        cmd = os.path.basename(argv[0])
        handler = getattr(self, "_cmd_" + cmd.replace("-", "_"), None)
        if cmd == self.cfg.binary_name:
            return self._binary(argv)
        if handler is None:
            return 127, "", f"{cmd}: command not found"
        return handler(argv[1:])

    def _cmd_id(self, args):
        return (0, "999\n", "") if args[-1] in self.users else (1, "", f"id: '{args[-1]}': no such user")

    def _cmd_useradd(self, args):
        self._mutate(["useradd", *args])
        name = args[-1]
        home = args[args.index("-d") + 1]
        self.users.add(name)
        p = self.root / home.lstrip("/")
        p.mkdir(parents=True, exist_ok=True)
        self.owners[str(p)] = f"{name}:{name}"
        return 0, "", ""

    def _cmd_stat(self, args):
        path = args[-1]
        if not Path(path).exists():
            return 1, "", f"stat: cannot stat '{path}'"
        return 0, self.owners.get(path, "root:root") + "\n", ""

    def _cmd_chown(self, args):
        self._mutate(["chown", *args])
        recursive = args[0] == "-R"
        owner, path = args[-2], args[-1]
        self.owners[path] = owner
        if recursive:
            for k in list(self.owners):
                if k.startswith(path + "/"):
                    self.owners[k] = owner
        return 0, "", ""

    def _cmd_systemctl(self, args):
        verb = args[0]
        unit = next((a for a in args[1:] if not a.startswith("-")), "")
        if verb in MUTATING_SYSTEMCTL:
            self._mutate(["systemctl", *args])
        if verb == "daemon-reload":
            return 0, "", ""
        u = self.unit(unit)
        if verb == "enable":
            u["enabled"] = True
        elif verb == "disable":
            u["enabled"] = False
        elif verb in ("start", "restart"):
            u["active"] = unit not in self.never_active
        elif verb == "stop":
            u["active"] = False
        elif verb == "reload":
            return (0, "", "") if u["active"] else (1, "", "unit not active")
        elif verb == "is-active":
            return (0, "", "") if u["active"] else (3, "", "")
        elif verb == "is-enabled":
            return (0, "", "") if u["enabled"] else (1, "", "")
        elif verb == "list-unit-files":
            if unit in self.installed_units:
                return 0, f"{unit} {'enabled' if u['enabled'] else 'disabled'} enabled\n", ""
            return 1, "", ""
        elif verb == "status":
            state = "active (running)" if u["active"] else "failed"
            return (0 if u["active"] else 3), f"* {unit}\n   Active: {state}\n", ""
        return 0, "", ""

    def _cmd_journalctl(self, args):
        return 0, "-- journal tail --\nError: listen tcp 127.0.0.1:11434: bind: address already in use\n", ""

    def _binary(self, argv):
        if not Path(argv[0]).exists():
            return 127, "", "no such file"
        if argv[1:] == ["--version"]:
            return (0, self.version + "\n", "") if self.version else (1, "", "exec format error")
        if argv[1:] == ["list"]:
            if not self.unit(self.cfg.unit)["active"]:
                return 1, "", "Error: could not connect to ollama app, is it running?"
            # The CLI dials the default address unless told otherwise.
            if self.env.get(self.cfg.host_env_var, DEFAULT_LISTEN) != self.cfg.listen:
                return 1, "", "Error: could not connect to ollama app, is it running?"
            if self.index_empty_polls > 0:
                self.index_empty_polls -= 1
                names = []
            else:
                names = model_store.list_models(self.root / self.cfg.models_dir.lstrip("/"))
            rows = ["NAME\tID\tSIZE\tMODIFIED"] + [f"{n}\tabc123\t3.8 GB\t2 days ago" for n in names]
            return 0, "\n".join(rows) + "\n", ""
        return 1, "", "unknown subcommand"

    def _cmd_sshd(self, args):
        return (0, "", "") if self.sshd_valid else (255, "", "line 3: Bad configuration option: Bogus")

    def _cmd_firewall_cmd(self, args):
        if args == ["--get-default-zone"]:
            return 0, self.default_zone + "\n", ""
        if args == ["--state"]:
            return (0, "running\n", "") if self.unit("firewalld.service")["active"] else (252, "not running\n", "")
        if args == ["--reload"]:
            self._mutate(["firewall-cmd", *args])
            return 0, "success\n", ""
        opts = dict(a.lstrip("-").split("=", 1) for a in args if "=" in a)
        if "set-default-zone" in opts:
            self._mutate(["firewall-cmd", *args])
            self.default_zone = opts["set-default-zone"]
            return 0, "success\n", ""
        zone = self.zone_services.setdefault(opts.get("zone", self.default_zone), set())
        if "query-service" in opts:
            return (0, "yes\n", "") if opts["query-service"] in zone else (1, "no\n", "")
        if "add-service" in opts:
            self._mutate(["firewall-cmd", *args])
            zone.add(opts["add-service"])
            return 0, "success\n", ""
        if "--list-services" in args:
            return 0, " ".join(sorted(zone)) + "\n", ""
        return 2, "", "unsupported"

    def _cmd_getenforce(self, args):
        return 0, self.selinux + "\n", ""

    def _cmd_restorecon(self, args):
        if "-n" in args:
            return 0, ("Would relabel " + args[-1] + "\n") if self.labels_dirty else "", ""
        self._mutate(["restorecon", *args])
        self.labels_dirty = False
        return 0, "", ""

    def _cmd_auditctl(self, args):
        if args == ["-l"]:
            return 0, ("\n".join(self.audit_rules) + "\n") if self.audit_rules else "No rules\n", ""
        self._mutate(["auditctl", *args])
        self.audit_rules.append(" ".join(args))
        return 0, "", ""

    def _cmd_ping(self, args):
        return (0, "1 packets transmitted, 1 received\n", "") if self.online else (1, "", "Network is unreachable")

    def _cmd_nvidia_smi(self, args):
        return 0, "NVIDIA A100-SXM4-80GB, 535.104.05\n", ""


# model store builders


def _blob(store: Path, content: bytes) -> str:
    digest = "sha256:" + hashlib.sha256(content).hexdigest()
    p = store / "blobs" / digest.replace(":", "-")
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(content)
    return digest


def write_model(store: Path, name: str, tag: str = "latest", *, layers: int = 1, manifest: bool = True) -> List[str]:
    """Write a model (config blob + layer blobs + manifest) into a store."""

    config = _blob(store, f"config:{name}:{tag}".encode())
    layer_digests = [_blob(store, f"weights:{name}:{tag}:{i}".encode() * 64) for i in range(layers)]
    if manifest:
        m = store / "manifests" / "registry.ollama.ai" / "library" / name / tag
        m.parent.mkdir(parents=True, exist_ok=True)
        m.write_text(
            json.dumps(
                {
                    "schemaVersion": 2,
                    "config": {"digest": config, "size": 10},
                    "layers": [{"digest": d, "size": 100} for d in layer_digests],
                }
            ),
            encoding="utf-8",
        )
    return [config, *layer_digests]


def make_bundle(base: Path, *, models: bool = True, binary: bool = True, metadata: bool = True) -> Path:
    bundle = base / "deployment-bundle"
    (bundle / "installers").mkdir(parents=True)
    (bundle / "scripts").mkdir()
    (bundle / "config").mkdir()
    (bundle / "scripts" / "bootstrap.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    (bundle / "config" / "README").write_text("unit overrides go here\n", encoding="utf-8")
    if binary:
        b = bundle / "installers" / "ollama"
        b.write_bytes(b"\x7fELF fake ollama binary")
        b.chmod(0o644)
    else:
        (bundle / "installers" / "README").write_text("empty\n", encoding="utf-8")
    if models:
        write_model(bundle / "models", "codellama", "7b")
        (bundle / "models" / "manifest.txt").write_text("codellama:7b\n", encoding="utf-8")
    if metadata:
        (bundle / "deployment.json").write_text(
            json.dumps(
                {
                    "timestamp": "2026-10-01T12:00:00Z",
                    "version": "0.1.32",
                    "models": "codellama:7b",
                    "commit": "4f2c9e1",
                    "triggered_by": "release-bot",
                }
            ),
            encoding="utf-8",
        )
    return bundle


def write_sshd_config(root: Path, text: Optional[str] = None) -> Path:
    p = root / "etc" / "ssh" / "sshd_config"
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(
        text
        or "\n".join(
            [
                "# OpenSSH server config",
                "Port 22",
                "#PermitRootLogin prohibit-password",
                "PasswordAuthentication yes",
                "#PubkeyAuthentication yes",
                "X11Forwarding yes",
                "Subsystem sftp /usr/libexec/openssh/sftp-server",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return p


class FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeHttp:
    def __init__(self, *, up: bool = True) -> None:
        self.up = up
        self.requests: List[str] = []

    def get(self, url, timeout=None):
        self.requests.append(url)
        if not self.up:
            raise requests.ConnectionError("connection refused")
        return FakeResponse({"version": "0.1.32"})

    def post(self, url, json=None, timeout=None):
        self.requests.append(url)
        if not self.up:
            raise requests.ConnectionError("connection refused")
        return FakeResponse({"model": json["model"], "response": "def hello_world():\n    print('hi')"})


@pytest.fixture
def cfg() -> DeployConfig:
    return DeployConfig()


@pytest.fixture
def root(tmp_path: Path) -> Path:
    r = tmp_path / "root"
    r.mkdir()
    return r


@pytest.fixture
def system(root: Path, cfg: DeployConfig) -> FakeSystem:
    return FakeSystem(root, cfg)


@pytest.fixture
def host(system: FakeSystem) -> Host:
    return system.host()


@pytest.fixture
def bundle(tmp_path: Path) -> Path:
    return make_bundle(tmp_path)


@pytest.fixture
def ctx(cfg: DeployConfig, host: Host, bundle: Path) -> DeployCtx:
    return DeployCtx.for_bundle(cfg, host, bundle)
