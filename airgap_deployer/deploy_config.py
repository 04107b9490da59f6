from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_DISABLE_SERVICES = ["bluetooth", "cups", "avahi-daemon"]
DEFAULT_REQUIRED_DIRS = ["installers", "models", "scripts", "config"]


@dataclass(frozen=True)
class DeployConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        sec = self.raw.get(name) or {}
        if not isinstance(sec, dict):
            raise ValueError(f"config section '{name}' must be a mapping")
        return sec

    # service

    @property
    def service_name(self) -> str:
        return str(self._section("service").get("name") or "ollama")

    @property
    def unit(self) -> str:
        return f"{self.service_name}.service"

    @property
    def account(self) -> str:
        return str(self._section("service").get("account") or self.service_name)

    @property
    def binary_name(self) -> str:
        return str(self._section("service").get("binary_name") or self.service_name)

    @property
    def binary_path(self) -> str:
        return str(self._section("service").get("binary_path") or f"/usr/local/bin/{self.binary_name}")

    @property
    def data_dir(self) -> str:
        return str(self._section("service").get("data_dir") or f"/usr/share/{self.service_name}")

    @property
    def models_dir(self) -> str:
        default = f"{self.data_dir}/.{self.service_name}/models"
        return str(self._section("service").get("models_dir") or default)

    @property
    def unit_path(self) -> str:
        return str(self._section("service").get("unit_path") or f"/etc/systemd/system/{self.unit}")

    @property
    def listen(self) -> str:
        return str(self._section("service").get("listen") or "127.0.0.1:11434")

    @property
    def host_env_var(self) -> str:
        return str(self._section("service").get("host_env_var") or f"{self.service_name.upper()}_HOST")

    @property
    def client_env(self) -> Dict[str, str]:
        """Environment that points the service's CLI at the configured listen address."""

        return {self.host_env_var: self.listen}

    @property
    def models_env_var(self) -> str:
        return str(self._section("service").get("models_env_var") or f"{self.service_name.upper()}_MODELS")

    # install

    @property
    def ready_attempts(self) -> int:
        return int(self._section("install").get("ready_attempts", 10))

    @property
    def ready_interval(self) -> float:
        return float(self._section("install").get("ready_interval", 1))

    # models

    @property
    def inventory_file(self) -> str:
        return str(self._section("models").get("inventory_file") or "manifest.txt")

    @property
    def settle_seconds(self) -> float:
        return float(self._section("models").get("settle_seconds", 5))

    @property
    def index_attempts(self) -> int:
        return int(self._section("models").get("index_attempts", 5))

    @property
    def index_interval(self) -> float:
        return float(self._section("models").get("index_interval", 3))

    @property
    def index_timeout_fatal(self) -> bool:
        return bool(self._section("models").get("index_timeout_fatal", False))

    # harden

    @property
    def sshd_config(self) -> str:
        return str(self._section("harden").get("sshd_config") or "/etc/ssh/sshd_config")

    @property
    def ssh_service(self) -> str:
        return str(self._section("harden").get("ssh_service") or "sshd")

    @property
    def firewall_zone(self) -> str:
        return str(self._section("harden").get("firewall_zone") or "drop")

    @property
    def firewall_allow(self) -> List[str]:
        return list(self._section("harden").get("firewall_allow") or ["ssh"])

    @property
    def disable_services(self) -> List[str]:
        v = self._section("harden").get("disable_services")
        return list(DEFAULT_DISABLE_SERVICES if v is None else v)

    @property
    def data_dir_mode(self) -> int:
        v = self._section("harden").get("data_dir_mode", 0o750)
        return int(v, 8) if isinstance(v, str) else int(v)

    # verify

    @property
    def api_url(self) -> str:
        return str(self._section("verify").get("api_url") or f"http://{self.listen}")

    @property
    def api_timeout(self) -> float:
        return float(self._section("verify").get("api_timeout", 5))

    @property
    def airgap_probe_host(self) -> str:
        return str(self._section("verify").get("airgap_probe_host") or "8.8.8.8")

    @property
    def smoke_model(self) -> Optional[str]:
        v = self._section("verify").get("smoke_model")
        return str(v) if v else None

    @property
    def smoke_prompt(self) -> str:
        return str(self._section("verify").get("smoke_prompt") or "def hello_world():")

    # bundle

    @property
    def required_dirs(self) -> List[str]:
        v = self._section("bundle").get("required_dirs")
        return list(DEFAULT_REQUIRED_DIRS if v is None else v)

    @property
    def metadata_file(self) -> str:
        return str(self._section("bundle").get("metadata_file") or "deployment.json")


def load_deploy_config(path: Optional[str]) -> DeployConfig:
    if not path:
        return DeployConfig()

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("deploy config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read the deploy config") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("deploy config must contain a mapping/object")

    return DeployConfig(raw=raw)
