from __future__ import annotations

import pytest

from airgap_deployer.errors import ConfigValidationFailed
from airgap_deployer.lib.sshd import setting
from airgap_deployer.pipeline import DeployCtx
from airgap_deployer.steps import step_40_harden_node
from airgap_deployer.steps.step_40_harden_node import harden_node, harden_sshd
from tests.conftest import write_sshd_config


@pytest.fixture
def node(cfg, system, root):
    write_sshd_config(root)
    (root / "usr/share/ollama/.ollama/models").mkdir(parents=True)
    (root / "usr/local/bin").mkdir(parents=True)
    (root / "usr/local/bin/ollama").write_bytes(b"bin")
    system.users.add("ollama")
    return DeployCtx(cfg=cfg, host=system.host())


def test_full_hardening(node, system, root) -> None:
    report = harden_node(node)

    text = (root / "etc/ssh/sshd_config").read_text()
    assert setting(text, "PermitRootLogin") == "no"
    assert setting(text, "PasswordAuthentication") == "no"
    assert setting(text, "PubkeyAuthentication") == "yes"
    assert setting(text, "X11Forwarding") == "no"
    assert list((root / "etc/ssh").glob("sshd_config.backup.*"))
    assert system.mutated("reload")

    assert system.default_zone == "drop"
    assert "ssh" in system.zone_services["drop"]
    assert system.mutated("--reload")

    assert report.disabled_services == ["cups"]
    assert system.unit("cups.service") == {"enabled": False, "active": False}

    data = root / "usr/share/ollama"
    assert system.owners[str(data)] == "ollama:ollama"
    assert data.stat().st_mode & 0o777 == 0o750

    assert report.selinux_mode == "Enforcing"
    assert system.mutated("restorecon")

    assert report.audit_rules_added == 2
    assert any("ollama_exec" in r for r in system.audit_rules)
    assert any("ollama_models" in r for r in system.audit_rules)

    assert set(report.results.values()) == {"pass"}


def test_rerun_makes_no_mutation(node, system) -> None:
    harden_node(node)
    system.mutations.clear()

    report = harden_node(node)

    assert system.mutations == []
    assert report.disabled_services == []
    assert report.audit_rules_added == 0


def test_invalid_sshd_config_is_restored_byte_for_byte(node, system, root) -> None:
    conf = root / "etc/ssh/sshd_config"
    original = conf.read_bytes()
    system.sshd_valid = False

    with pytest.raises(ConfigValidationFailed):
        harden_node(node)

    assert conf.read_bytes() == original
    assert system.mutated("reload") == []
    assert system.mutated("restart") == []
    # Nothing after the SSH step ran.
    assert system.default_zone == "public"


def test_missing_sshd_config_is_a_warning(node, system, root) -> None:
    (root / "etc/ssh/sshd_config").unlink()
    assert harden_sshd(node) == "warn"


def test_missing_subsystems_are_skipped(node, system) -> None:
    system.commands -= {"firewall-cmd", "getenforce", "auditctl"}
    system.installed_units.discard("cups.service")

    report = harden_node(node)

    assert report.results["firewall"] == "warn"
    assert report.results["selinux"] == "skip"
    assert report.results["audit"] == "warn"
    assert report.disabled_services == []
    assert system.unit("cups.service")["active"] is True


def test_permissive_selinux_only_warns(node, system) -> None:
    system.selinux = "Permissive"
    report = harden_node(node)
    assert report.results["selinux"] == "warn"
    assert report.results["ssh"] == "pass"


def test_best_effort_step_failure_does_not_abort(node, system) -> None:
    original = system._cmd_firewall_cmd

    def broken(args):
        if any(a.startswith("--set-default-zone") for a in args):
            return 1, "", "Error: INVALID_ZONE"
        return original(args)

    system._cmd_firewall_cmd = broken
    report = harden_node(node)

    assert report.results["firewall"] == "warn"
    assert report.results["audit"] == "pass"


def test_config_with_legacy_encoded_comment_is_hardened(node, root) -> None:
    conf = root / "etc/ssh/sshd_config"
    conf.write_bytes(b"# Verwaltung: J\xf6rg\n" + conf.read_bytes())

    assert harden_sshd(node) == "pass"

    data = conf.read_bytes()
    assert data.startswith(b"# Verwaltung: J\xf6rg\n")
    assert setting(data.decode("latin-1"), "PermitRootLogin") == "no"
    assert harden_sshd(node) == "pass"


def test_os_error_in_best_effort_step_is_a_warning(node, monkeypatch) -> None:
    def denied(ctx):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(step_40_harden_node, "secure_data_dir", denied)
    report = harden_node(node)

    assert report.results["ssh"] == "pass"
    assert report.results["permissions"] == "warn"
    assert report.results["audit"] == "pass"
