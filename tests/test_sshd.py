from __future__ import annotations

from airgap_deployer.lib.sshd import HARDENED_DIRECTIVES, effective_settings, rewrite_config, setting

STOCK = """\
# OpenSSH server config
Port 22
#PermitRootLogin prohibit-password
PasswordAuthentication yes
X11Forwarding yes
Subsystem sftp /usr/libexec/openssh/sftp-server
"""


def test_rewrites_commented_and_active_directives() -> None:
    out = rewrite_config(STOCK)
    assert "PermitRootLogin no" in out.splitlines()
    assert "PasswordAuthentication no" in out.splitlines()
    assert "X11Forwarding no" in out.splitlines()
    assert "#PermitRootLogin prohibit-password" not in out
    assert "Port 22" in out.splitlines()


def test_appends_missing_directives() -> None:
    out = rewrite_config(STOCK)
    settings = effective_settings(out)
    for name, value in HARDENED_DIRECTIVES.items():
        assert settings[name.lower()] == value


def test_rewrite_is_idempotent() -> None:
    once = rewrite_config(STOCK)
    assert rewrite_config(once) == once


def test_missing_directives_stay_out_of_match_blocks() -> None:
    text = "Port 22\nMatch User backup\n    PasswordAuthentication yes\n"
    out = rewrite_config(text).splitlines()
    match_at = out.index("Match User backup")
    assert out.index("PermitRootLogin no") < match_at
    # Per-user overrides inside the Match block are not touched.
    assert out[-1] == "    PasswordAuthentication yes"
    assert setting("\n".join(out), "PasswordAuthentication") == "no"


def test_first_occurrence_wins() -> None:
    text = "PermitRootLogin yes\nPermitRootLogin no\n"
    assert setting(text, "permitrootlogin") == "yes"
    assert setting(text, "X11Forwarding") is None
