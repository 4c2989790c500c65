"""Certificate issuance through certbot and inspection of the result."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..errors import ExternalCommandFailure
from ..runner import CommandRunner


class CertbotError(ExternalCommandFailure):
    """Raised when certificate issuance fails."""


@dataclass(slots=True)
class CertificateReport:
    """Names and validity of an issued certificate."""

    path: Path
    names: tuple[str, ...]
    not_valid_after: datetime
    missing: tuple[str, ...] = field(default_factory=tuple)

    @property
    def expired(self) -> bool:
        """Return True when the certificate is no longer valid."""
        return self.not_valid_after <= datetime.now(tz=UTC)


@dataclass(slots=True)
class CertbotProvider:
    """Obtain certificates with ``certbot certonly`` and read them back."""

    runner: CommandRunner
    certbot_bin: str = "certbot"

    def installed(self) -> bool:
        """Return True when certbot is on the path."""
        return self.runner.which(self.certbot_bin) is not None

    def install(self, plugin: str) -> None:
        """Install certbot and its web-server plugin through apt."""
        result = self.runner.run(
            ["apt-get", "install", "-y", "certbot", f"python3-certbot-{plugin}"],
            sudo=True,
        )
        if not result.ok:
            raise CertbotError(
                result.args,
                result.returncode,
                result.output,
                summary="Failed to install certbot",
            )

    def obtain(
        self,
        names: Sequence[str],
        *,
        email: str,
        plugin: str,
    ) -> None:
        """Request a certificate covering *names* (the first is the primary)."""
        args = [self.certbot_bin, "certonly", f"--{plugin}"]
        for name in names:
            args.extend(["-d", name])
        args.extend(["--non-interactive", "--agree-tos", "--email", email])
        result = self.runner.run(args, sudo=True)
        if not result.ok:
            raise CertbotError(
                result.args,
                result.returncode,
                result.output,
                summary=f"Certificate issuance for {names[0]} failed (exit {result.returncode})",
            )

    def certificate_exists(self, path: Path) -> bool:
        """Return True when *path* exists; live directories are root-only."""
        return self.runner.run(["test", "-f", str(path)], sudo=True).ok

    def inspect(self, path: Path, expected: Sequence[str]) -> CertificateReport:
        """Load the certificate at *path* and compare its names with *expected*."""
        result = self.runner.run(["cat", str(path)], sudo=True)
        if not result.ok:
            raise CertbotError(
                result.args,
                result.returncode,
                result.output,
                summary=f"Unable to read certificate {path}",
            )
        certificate = x509.load_pem_x509_certificate(result.stdout.encode("utf-8"))
        names = certificate_names(certificate)
        lowered = {name.lower() for name in names}
        missing = tuple(name for name in expected if name.lower() not in lowered)
        return CertificateReport(
            path=path,
            names=names,
            not_valid_after=certificate.not_valid_after_utc,
            missing=missing,
        )


def certificate_names(certificate: x509.Certificate) -> tuple[str, ...]:
    """Return DNS names from the SAN extension, falling back to the common name."""
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return tuple(
            str(attribute.value)
            for attribute in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        )
    return tuple(extension.value.get_values_for_type(x509.DNSName))


__all__ = ["CertbotError", "CertbotProvider", "CertificateReport", "certificate_names"]
