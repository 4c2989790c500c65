"""Tests for the PHP, systemd, web-server and certbot providers."""
from __future__ import annotations

import base64

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from packaging.version import Version

from conftest import FakeRunner
from mmdeploy.effective import EffectiveConfig
from mmdeploy.errors import PreconditionFailure
from mmdeploy.fileops import LocalFileOps, SudoFileOps
from mmdeploy.providers import (
    STAPLING_DIRECTIVE,
    ApacheError,
    ApacheProvider,
    CertbotError,
    CertbotProvider,
    NginxProvider,
    PhpProvider,
    SystemdError,
    SystemdProvider,
    detect_active,
    parse_php_version,
)


def _certificate_pem(
    common_name: str,
    alt_names: list[str] | None = None,
    *,
    valid_days: int = 60,
) -> str:
    """Build a self-signed certificate and return it PEM encoded."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=90))
        .not_valid_after(now + timedelta(days=valid_days))
    )
    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in alt_names]),
            critical=False,
        )
    certificate = builder.sign(key, hashes.SHA256())
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


# ----------------------------------------------------------------------
# PHP
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    ("raw", "expected"),
    [("8.1.2-1ubuntu2.14", "8.1.2"), ("7.4", "7.4"), ("  8.3.0\n", "8.3.0")],
)
def test_parse_php_version(raw: str, expected: str) -> None:
    assert parse_php_version(raw) == Version(expected)


def test_parse_php_version_rejects_garbage() -> None:
    with pytest.raises(PreconditionFailure):
        parse_php_version("PHP Warning: something")


def test_php_meets_compares_numerically() -> None:
    runner = FakeRunner()
    runner.script("php", "-r", stdout="7.10.0")
    php = PhpProvider(runner)

    ok, current = php.meets("7.4")

    assert ok is True
    assert current == Version("7.10.0")
    assert runner.commands == [("php", "-r", "echo PHP_VERSION;")]


def test_php_modules_skips_headers(fake_runner: FakeRunner) -> None:
    assert PhpProvider(fake_runner).modules() == {"curl", "json", "mbstring"}


def test_php_run_script_as_uses_sudo_user() -> None:
    runner = FakeRunner()
    PhpProvider(runner).run_script_as("www-data", Path("/etc/app/probe.php"))
    assert runner.calls[0].args == ("sudo", "-u", "www-data", "php", "/etc/app/probe.php")
    assert runner.calls[0].sudo is False


# ----------------------------------------------------------------------
# systemd
# ----------------------------------------------------------------------
def test_systemd_reload_raises_on_failure() -> None:
    runner = FakeRunner()
    runner.script("systemctl", "reload", returncode=1, stderr="Job failed")
    systemd = SystemdProvider(runner)

    with pytest.raises(SystemdError) as excinfo:
        systemd.reload("apache2")
    assert "Job failed" in str(excinfo.value)


def test_systemd_enable_and_start_do_not_raise() -> None:
    runner = FakeRunner()
    runner.script("systemctl", "enable", returncode=1)
    systemd = SystemdProvider(runner)

    assert systemd.enable("meeting-meter.service").ok is False
    assert systemd.start("meeting-meter.service").ok is True
    assert all(call.sudo for call in runner.calls)


def test_detect_active_prefers_first_running_server() -> None:
    runner = FakeRunner()
    runner.script("systemctl", "is-active", "--quiet", "apache2", returncode=3)
    systemd = SystemdProvider(runner)
    apache = ApacheProvider(runner, systemd, LocalFileOps())
    nginx = NginxProvider(runner, systemd)

    assert detect_active((apache, nginx)) is nginx


# ----------------------------------------------------------------------
# Apache / nginx
# ----------------------------------------------------------------------
def test_apache_prepare_and_enable_site(make_effective: Callable[..., EffectiveConfig]) -> None:
    runner = FakeRunner()
    apache = ApacheProvider(runner, SystemdProvider(runner), LocalFileOps())
    effective = make_effective()

    apache.prepare(effective, tls=True)
    apache.enable_site(effective)
    apache.reload()

    assert runner.commands == [
        ("a2enmod", "headers", "rewrite", "ssl", "socache_shmcb"),
        ("a2ensite", "meeting-meter"),
        ("systemctl", "reload", "apache2"),
    ]


def test_apache_configtest_failure_carries_output() -> None:
    runner = FakeRunner()
    runner.script("apache2ctl", "configtest", returncode=1, stderr="Syntax error on line 3")
    apache = ApacheProvider(runner, SystemdProvider(runner), LocalFileOps())

    with pytest.raises(ApacheError) as excinfo:
        apache.configtest()
    assert "Syntax error on line 3" in str(excinfo.value)
    assert apache.configtest_result().ok is False


def test_apache_stapling_cache_added_once(tmp_path: Path) -> None:
    conf = tmp_path / "apache2.conf"
    conf.write_text("ServerRoot /etc/apache2", encoding="utf-8")
    runner = FakeRunner()
    apache = ApacheProvider(runner, SystemdProvider(runner), LocalFileOps())

    assert apache.ensure_stapling_cache(conf) is True
    assert apache.ensure_stapling_cache(conf) is False
    assert conf.read_text(encoding="utf-8") == f"ServerRoot /etc/apache2\n{STAPLING_DIRECTIVE}\n"


def test_apache_stapling_cache_reads_root_owned_conf_with_sudo() -> None:
    conf = Path("/etc/apache2/apache2.conf")
    runner = FakeRunner()
    runner.script("stat", stdout="644\n")
    runner.script("base64", stdout=base64.b64encode(b"ServerRoot /etc/apache2\n").decode())
    apache = ApacheProvider(runner, SystemdProvider(runner), SudoFileOps(runner))

    assert apache.ensure_stapling_cache(conf) is True
    assert [call.args[0] for call in runner.calls] == ["stat", "base64", "tee"]
    assert all(call.sudo for call in runner.calls)
    assert runner.calls[-1].input_text == f"{STAPLING_DIRECTIVE}\n"

    runner.script("base64", stdout=base64.b64encode(f"{STAPLING_DIRECTIVE}\n".encode()).decode())
    assert apache.ensure_stapling_cache(conf) is False


def test_nginx_site_paths_and_enable(make_effective: Callable[..., EffectiveConfig]) -> None:
    runner = FakeRunner()
    nginx = NginxProvider(runner, SystemdProvider(runner))
    effective = make_effective()

    assert nginx.site_path(effective) == Path("/etc/nginx/sites-available/meeting-meter.conf")
    nginx.enable_site(effective)
    nginx.configtest()

    assert runner.commands == [
        (
            "ln",
            "-sfn",
            "/etc/nginx/sites-available/meeting-meter.conf",
            "/etc/nginx/sites-enabled/meeting-meter.conf",
        ),
        ("nginx", "-t"),
    ]

    custom = make_effective(nginx_config_file="/etc/nginx/conf.d/app.conf")
    assert nginx.site_path(custom) == Path("/etc/nginx/conf.d/app.conf")


# ----------------------------------------------------------------------
# certbot
# ----------------------------------------------------------------------
def test_certbot_obtain_builds_command() -> None:
    runner = FakeRunner()
    CertbotProvider(runner).obtain(
        ("a.example.com", "www.a.example.com"),
        email="ops@example.com",
        plugin="apache",
    )
    assert runner.calls[0].sudo is True
    assert runner.commands[0] == (
        "certbot",
        "certonly",
        "--apache",
        "-d",
        "a.example.com",
        "-d",
        "www.a.example.com",
        "--non-interactive",
        "--agree-tos",
        "--email",
        "ops@example.com",
    )


def test_certbot_obtain_failure_raises() -> None:
    runner = FakeRunner()
    runner.script("certbot", returncode=1, stderr="rate limited")
    with pytest.raises(CertbotError) as excinfo:
        CertbotProvider(runner).obtain(("a.example.com",), email="x@example.com", plugin="nginx")
    assert "rate limited" in str(excinfo.value)
    assert excinfo.value.returncode == 1


def test_certbot_inspect_reports_missing_names() -> None:
    runner = FakeRunner()
    runner.script("cat", stdout=_certificate_pem("a.example.com", ["a.example.com"]))
    report = CertbotProvider(runner).inspect(
        Path("/etc/letsencrypt/live/a.example.com/fullchain.pem"),
        ("a.example.com", "www.a.example.com"),
    )

    assert report.names == ("a.example.com",)
    assert report.missing == ("www.a.example.com",)
    assert report.expired is False


def test_certbot_inspect_falls_back_to_common_name_and_detects_expiry() -> None:
    runner = FakeRunner()
    runner.script("cat", stdout=_certificate_pem("a.example.com", valid_days=-1))
    report = CertbotProvider(runner).inspect(Path("/cert.pem"), ("A.example.com",))

    assert report.names == ("a.example.com",)
    assert report.missing == ()
    assert report.expired is True
