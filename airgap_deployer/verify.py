"""Post-deploy verification.

A read-only battery of checks that re-derives everything from the live host, so
it can run on its own as a health check long after the deployment finished.
Only failures affect the outcome; warnings are informational.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

import requests

from .deploy_config import DeployConfig
from .lib import model_store, sshd, systemd
from .lib.host import Host
from .lib.net import is_online

logger = logging.getLogger(__name__)


class Status(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


@dataclass(frozen=True)
class Check:
    name: str
    status: Status
    detail: str


@dataclass
class VerificationReport:
    checks: List[Check] = field(default_factory=list)

    def add(self, name: str, status: Status, detail: str) -> None:
        self.checks.append(Check(name=name, status=status, detail=detail))

    def _count(self, status: Status) -> int:
        return sum(1 for c in self.checks if c.status is status)

    @property
    def passed(self) -> int:
        return self._count(Status.PASS)

    @property
    def failed(self) -> int:
        return self._count(Status.FAIL)

    @property
    def warned(self) -> int:
        return self._count(Status.WARN)

    @property
    def score(self) -> float:
        """Percentage of scored checks that passed (warnings are not scored)."""

        scored = self.passed + self.failed
        return round(100.0 * self.passed / scored, 1) if scored else 0.0

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "passed": self.passed,
            "failed": self.failed,
            "warned": self.warned,
            "score": self.score,
            "checks": [{"name": c.name, "status": c.status.value, "detail": c.detail} for c in self.checks],
        }


class Verifier:
    def __init__(self, cfg: DeployConfig, host: Host, *, http: Any = requests) -> None:
        self.cfg = cfg
        self.host = host
        self.http = http

    def check_binary(self, report: VerificationReport) -> None:
        binary = self.host.path(self.cfg.binary_path)
        if binary.is_file() and os.access(binary, os.X_OK):
            r = self.host.query([str(binary), "--version"])
            version = (r.stdout or r.stderr).strip().splitlines()[:1]
            report.add("binary", Status.PASS, f"Binary installed: {version[0] if version else 'unknown version'}")
        else:
            report.add("binary", Status.FAIL, f"{self.cfg.binary_path} not found or not executable")

    def check_account(self, report: VerificationReport) -> None:
        if self.host.query(["id", self.cfg.account]).returncode == 0:
            report.add("account", Status.PASS, f"User '{self.cfg.account}' exists")
        else:
            report.add("account", Status.FAIL, f"User '{self.cfg.account}' does not exist")

    def check_service(self, report: VerificationReport) -> None:
        unit = self.cfg.unit
        if systemd.is_enabled(self.host, unit):
            report.add("service_enabled", Status.PASS, f"{unit} is enabled")
        else:
            report.add("service_enabled", Status.FAIL, f"{unit} is not enabled")
        if systemd.is_active(self.host, unit):
            report.add("service_active", Status.PASS, f"{unit} is running")
        else:
            report.add("service_active", Status.FAIL, f"{unit} is not running")

    def check_models_dir(self, report: VerificationReport) -> None:
        models = self.host.path(self.cfg.models_dir)
        try:
            present = models.is_dir()
        except PermissionError as e:
            report.add("models_dir", Status.FAIL, f"Cannot read {self.cfg.models_dir}: {e.strerror} (run as root)")
            return
        if not present:
            report.add("models_dir", Status.FAIL, "Models directory not found")
            return
        count = len(model_store.eligible_files(models))
        size = model_store.human_size(model_store.disk_usage(models))
        report.add("models_dir", Status.PASS, f"Models directory exists ({size}, {count} files)")

        missing = model_store.missing_blobs(models)
        if missing:
            report.add("model_store", Status.FAIL, f"Manifests reference missing blobs: {', '.join(missing)}")
        else:
            report.add("model_store", Status.PASS, "Every manifest resolves to present blobs")

    def check_api(self, report: VerificationReport) -> None:
        url = f"{self.cfg.api_url.rstrip('/')}/api/version"
        try:
            resp = self.http.get(url, timeout=self.cfg.api_timeout)
            resp.raise_for_status()
            version = (resp.json() or {}).get("version", "unknown")
        except (requests.RequestException, ValueError) as e:
            report.add("api", Status.FAIL, f"API not responding on {self.cfg.listen}: {e}")
            return
        report.add("api", Status.PASS, f"API is responding (version {version})")

    def check_inventory(self, report: VerificationReport) -> None:
        binary = self.host.path(self.cfg.binary_path)
        if not binary.is_file():
            report.add("inventory", Status.FAIL, f"{self.cfg.binary_name} command not available")
            return
        r = self.host.query([str(binary), "list"], env=self.cfg.client_env)
        names = model_store.parse_inventory(r.stdout) if r.returncode == 0 else []
        if names:
            report.add("inventory", Status.PASS, f"Models loaded: {', '.join(names)}")
        else:
            report.add("inventory", Status.FAIL, "No models found")

    def check_gpu(self, report: VerificationReport) -> None:
        if not self.host.has_command("nvidia-smi"):
            report.add("gpu", Status.WARN, "nvidia-smi not found - running in CPU-only mode")
            return
        r = self.host.query(["nvidia-smi", "--query-gpu=name,driver_version", "--format=csv,noheader"])
        if r.returncode == 0 and r.stdout.strip():
            report.add("gpu", Status.PASS, f"GPU available: {r.stdout.strip().splitlines()[0]}")
        else:
            report.add("gpu", Status.WARN, "nvidia-smi failed - driver issue?")

    def check_firewall(self, report: VerificationReport) -> None:
        if not self.host.has_command("firewall-cmd"):
            report.add("firewall", Status.WARN, "firewalld not installed")
            return
        if self.host.query(["firewall-cmd", "--state"]).returncode != 0:
            report.add("firewall", Status.WARN, "firewalld not running")
            return
        zone = self.host.query(["firewall-cmd", "--get-default-zone"]).stdout.strip()
        services = self.host.query(["firewall-cmd", f"--zone={zone}", "--list-services"]).stdout.strip()
        report.add("firewall", Status.PASS, f"firewalld running (default zone {zone}, allowed: {services or '-'})")

    def check_ssh(self, report: VerificationReport) -> None:
        conf = self.host.path(self.cfg.sshd_config)
        try:
            text = conf.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            text = ""
        except OSError as e:
            report.add("ssh_config", Status.WARN, f"Cannot read {self.cfg.sshd_config}: {e.strerror}")
            return
        if sshd.setting(text, "PermitRootLogin") == "no":
            report.add("ssh_root_login", Status.PASS, "Root login disabled")
        else:
            report.add("ssh_root_login", Status.WARN, "Root login may be enabled")
        if sshd.setting(text, "PasswordAuthentication") == "no":
            report.add("ssh_password_auth", Status.PASS, "Password authentication disabled")
        else:
            report.add("ssh_password_auth", Status.WARN, "Password authentication may be enabled")

    def check_airgap(self, report: VerificationReport) -> None:
        if is_online(self.host, probe_host=self.cfg.airgap_probe_host):
            report.add("airgap", Status.WARN, "Internet connectivity detected - is this truly air-gapped?")
        else:
            report.add("airgap", Status.PASS, "No internet connectivity (air-gapped confirmed)")

    def check_generate(self, report: VerificationReport) -> None:
        model = self.cfg.smoke_model
        if not model:
            return
        url = f"{self.cfg.api_url.rstrip('/')}/api/generate"
        payload = {"model": model, "prompt": self.cfg.smoke_prompt, "stream": False}
        try:
            resp = self.http.post(url, json=payload, timeout=max(self.cfg.api_timeout, 120))
            resp.raise_for_status()
            answer = (resp.json() or {}).get("response")
        except (requests.RequestException, ValueError) as e:
            report.add("generate", Status.FAIL, f"Inference with {model} failed: {e}")
            return
        if answer:
            report.add("generate", Status.PASS, f"Inference with {model} succeeded")
        else:
            report.add("generate", Status.FAIL, f"Inference with {model} returned an empty response")

    def checks(self) -> List[Callable[[VerificationReport], None]]:
        return [
            self.check_binary,
            self.check_account,
            self.check_service,
            self.check_models_dir,
            self.check_api,
            self.check_inventory,
            self.check_gpu,
            self.check_firewall,
            self.check_ssh,
            self.check_airgap,
            self.check_generate,
        ]

    def run(self) -> VerificationReport:
        report = VerificationReport()
        for check in self.checks():
            try:
                check(report)
            except Exception as e:
                # One broken probe must not hide the rest of the report.
                name = check.__name__.replace("check_", "", 1)
                logger.debug("Check %s raised", name, exc_info=True)
                report.add(name, Status.FAIL, f"Check could not run: {e}")
        return report


_LEVELS = {Status.PASS: logging.INFO, Status.WARN: logging.WARNING, Status.FAIL: logging.ERROR}


def log_report(report: VerificationReport) -> None:
    for c in report.checks:
        logger.log(_LEVELS[c.status], "[%s] %s: %s", c.status.value.upper(), c.name, c.detail)
    logger.info(
        "Verification summary: passed=%d failed=%d warned=%d score=%.1f%%",
        report.passed,
        report.failed,
        report.warned,
        report.score,
    )
    if report.ok:
        logger.info("All critical checks passed")
    else:
        logger.error("Some checks failed - review errors above")


def verify_deployment(cfg: DeployConfig, host: Host, *, http: Any = requests) -> VerificationReport:
    report = Verifier(cfg, host, http=http).run()
    log_report(report)
    return report
