"""TLS certificate lifecycle for the gate.

Keeps a self-signed certificate in step with the configured domain:
- the canonical domain becomes the certificate CN
- a small record file remembers which domain the certificate on disk was
  generated for, so a domain change triggers regeneration
- existing material is reused when nothing changed, which keeps client
  trust decisions (browser exceptions) valid across restarts

Key material is produced by an external tool behind the CertificateTool
interface; OpenSSLTool shells out to `openssl`.
"""

import hashlib
import ipaddress
import json
import logging
import os
import re
import socket
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from common import command_output, find_executable, run_command

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_CERT_DAYS = 3650
DEFAULT_KEY_SIZE = 2048
DEFAULT_TOOL_TIMEOUT = 10  # seconds per tool invocation
DEFAULT_ORGANIZATION = "FileShare"

DEFAULT_GATEWAY_ADDRESS = "192.168.1.1"
LOCAL_DOMAIN_SUFFIX = ".lan"

CERT_FILE = "server.crt"
KEY_FILE = "server.key"
RECORD_FILE = "cert.info"

OPENSSL_CANDIDATES = ("/usr/bin/openssl", "/bin/openssl")

_INET_ADDR = re.compile(r"inet\s+(\d{1,3}(?:\.\d{1,3}){3})")


class CertificateToolError(Exception):
    """The external certificate tool failed or timed out."""


class CertificateGenerationError(Exception):
    """No usable certificate material could be produced."""


class CertificateTool(Protocol):
    def generate(self, common_name: str, alt_names: Sequence[str]) -> tuple[bytes, bytes]:
        """Return (certificate_pem, private_key_pem) for common_name.

        An empty alt_names asks for a minimal certificate without the
        subjectAltName extension.
        """
        ...


@dataclass(frozen=True)
class DomainPolicy:
    """How the certificate's canonical domain is derived."""
    domain_name: str = ""
    use_domain: bool = False
    local_suffix: str = LOCAL_DOMAIN_SUFFIX


@dataclass
class DomainRecord:
    """Which domain the on-disk certificate was generated for."""
    domain: str
    generated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DomainRecord":
        if not isinstance(data, dict) or not isinstance(data.get("domain"), str):
            raise ValueError("Certificate record has no domain")

        generated_at = None
        if raw := data.get("generatedAt"):
            try:
                generated_at = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Ignoring unparseable generatedAt: %r", raw)
        return cls(domain=data["domain"], generated_at=generated_at)

    @classmethod
    def load(cls, path: Path) -> Optional["DomainRecord"]:
        """Load a record, returning None when it does not exist.

        Raises:
            ValueError: If the record is not valid JSON or lacks a domain
            OSError: If the file exists but cannot be read
        """
        if not path.exists():
            return None
        return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")


@dataclass
class CertificateMaterial:
    """Certificate and private key as loaded from disk."""
    certificate: bytes
    private_key: bytes
    cert_path: Path
    key_path: Path
    domain: str

    @property
    def fingerprint(self) -> str:
        return certificate_fingerprint(self.certificate)

    def ssl_context(self) -> ssl.SSLContext:
        """Build a server-side SSL context from this material."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(
            certfile=str(self.cert_path),
            keyfile=str(self.key_path),
        )
        return context


def certificate_fingerprint(pem: bytes) -> str:
    """SHA256 fingerprint of a PEM certificate as "AB:CD:...".

    Computed in-process so reusing a certificate never runs the tool.

    Raises:
        ValueError: If pem is not a PEM certificate
    """
    der = ssl.PEM_cert_to_DER_cert(pem.decode("ascii"))
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def _is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


# Gateway discovery probes, tried in order. Each returns '' or None on a miss.

def probe_uci_lan_address() -> str:
    """Router LAN address from OpenWrt UCI (may carry a /prefix)."""
    return command_output(["uci", "get", "network.lan.ipaddr"]).split("/")[0].strip()


def probe_bridge_address(interface: str = "br-lan") -> str:
    """IPv4 address of the LAN bridge interface."""
    output = command_output(["ip", "-4", "-o", "addr", "show", interface])
    match = _INET_ADDR.search(output)
    return match.group(1) if match else ""


def get_primary_ip() -> Optional[str]:
    """Get the primary IP address.

    Connects a UDP socket towards a public address (no packets are sent)
    and reads back the bound local address.

    Returns:
        Primary IP address, or None if cannot be determined
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.settimeout(0)
            sock.connect(("8.8.8.8", 80))
            ip: str = sock.getsockname()[0]
        finally:
            sock.close()
        return ip
    except OSError:
        return None


DEFAULT_GATEWAY_PROBES: tuple[Callable[[], Optional[str]], ...] = (
    probe_uci_lan_address,
    probe_bridge_address,
    get_primary_ip,
)


def discover_gateway_address(
    probes: Optional[Sequence[Callable[[], Optional[str]]]] = None,
    default: str = DEFAULT_GATEWAY_ADDRESS,
) -> str:
    """Best-effort discovery of the router/gateway address.

    Args:
        probes: Ordered probes (default: UCI, br-lan, primary IP)
        default: Address used when every probe misses

    Returns:
        First valid IP address reported by a probe, else default
    """
    if probes is None:
        probes = DEFAULT_GATEWAY_PROBES

    for probe in probes:
        try:
            address = (probe() or "").strip()
        except Exception as e:
            logger.debug("Gateway probe %s failed: %s", getattr(probe, "__name__", probe), e)
            continue
        if address and _is_ip_address(address):
            logger.debug("Gateway address %s (from %s)", address, getattr(probe, "__name__", probe))
            return address

    logger.warning("Could not discover gateway address, using default %s", default)
    return default


def canonical_domain(policy: DomainPolicy, discover: Callable[[], str]) -> str:
    """Compute the name that becomes the certificate CN."""
    name = policy.domain_name.strip() or discover()
    if policy.use_domain and "." not in name:
        name = name + policy.local_suffix
    return name


def alternate_names(domain: str, gateway: str, local_suffix: str = LOCAL_DOMAIN_SUFFIX) -> list[str]:
    """Build the subjectAltName entries for a certificate.

    Includes the domain, the gateway address, localhost, 127.0.0.1,
    0.0.0.0 and, for names under the local suffix, the bare host name.
    """
    entries = [
        f"IP:{domain}" if _is_ip_address(domain) else f"DNS:{domain}",
        f"IP:{gateway}",
        "DNS:localhost",
        "IP:127.0.0.1",
        "IP:0.0.0.0",
    ]
    if local_suffix and domain.endswith(local_suffix) and len(domain) > len(local_suffix):
        entries.append(f"DNS:{domain[:-len(local_suffix)]}")

    # Order-preserving dedupe
    return list(dict.fromkeys(entries))


class OpenSSLTool:
    """CertificateTool backed by the openssl command line."""

    def __init__(
        self,
        executable: Optional[str] = None,
        key_size: int = DEFAULT_KEY_SIZE,
        days: int = DEFAULT_CERT_DAYS,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        organization: str = DEFAULT_ORGANIZATION,
    ):
        self.executable = executable
        self.key_size = key_size
        self.days = days
        self.timeout = timeout
        self.organization = organization

    def _find_executable(self) -> str:
        exe = self.executable or find_executable("openssl", OPENSSL_CANDIDATES)
        if not exe:
            raise CertificateToolError(
                "openssl not found. Install it (OpenWrt: opkg install openssl-util)"
            )
        return exe

    def _run(self, cmd: list[str], what: str) -> None:
        rc, _, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            detail = err.strip() or f"exit code {rc}"
            raise CertificateToolError(f"openssl {what} failed: {detail}")

    def _config(self, common_name: str, alt_names: Sequence[str]) -> str:
        return f"""
[req]
prompt = no
default_md = sha256
distinguished_name = dn

[dn]
CN = {common_name}
O = {self.organization}

[v3_req]
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = {",".join(alt_names)}
"""

    def generate(self, common_name: str, alt_names: Sequence[str]) -> tuple[bytes, bytes]:
        exe = self._find_executable()

        with tempfile.TemporaryDirectory(prefix="filegate-tls-") as tmp:
            work = Path(tmp)
            key_path = work / KEY_FILE
            cert_path = work / CERT_FILE

            self._run(
                [exe, "genrsa", "-out", str(key_path), str(self.key_size)],
                "key generation",
            )

            cmd = [
                exe, "req",
                "-new",
                "-x509",
                "-key", str(key_path),
                "-out", str(cert_path),
                "-days", str(self.days),
            ]
            if alt_names:
                config_path = work / "cert.cnf"
                config_path.write_text(self._config(common_name, alt_names))
                cmd += ["-extensions", "v3_req", "-config", str(config_path)]
            else:
                cmd += ["-subj", f"/CN={common_name}/O={self.organization}"]

            self._run(cmd, "certificate generation")

            try:
                certificate = cert_path.read_bytes()
                private_key = key_path.read_bytes()
            except OSError as e:
                raise CertificateToolError(f"openssl produced no output: {e}") from e

        if not certificate or not private_key:
            raise CertificateToolError("openssl produced empty certificate material")
        return certificate, private_key


def _write_file(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


class CertificateManager:
    """Owns the certificate, key and record files in cert_dir.

    No other component reads or writes these paths directly; they go
    through ensure() and the returned CertificateMaterial.
    """

    def __init__(
        self,
        cert_dir: Path,
        policy: DomainPolicy,
        tool: Optional[CertificateTool] = None,
        discover: Callable[[], str] = discover_gateway_address,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cert_dir = Path(cert_dir)
        self.policy = policy
        self.tool = tool if tool is not None else OpenSSLTool()
        self._discover = discover
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._gateway: Optional[str] = None

        self.cert_path = self.cert_dir / CERT_FILE
        self.key_path = self.cert_dir / KEY_FILE
        self.record_path = self.cert_dir / RECORD_FILE

    def gateway_address(self) -> str:
        """Discovered gateway address, probed at most once per manager."""
        if self._gateway is None:
            self._gateway = self._discover()
        return self._gateway

    def canonical_domain(self) -> str:
        return canonical_domain(self.policy, self.gateway_address)

    def load_record(self) -> Optional[DomainRecord]:
        return DomainRecord.load(self.record_path)

    def domain_changed(self, domain: str) -> bool:
        """True when the on-disk certificate was not generated for domain."""
        try:
            record = self.load_record()
        except (OSError, ValueError) as e:
            logger.warning("Cannot read certificate record %s: %s", self.record_path, e)
            return True

        if record is None:
            logger.info("No certificate record found in %s", self.cert_dir)
            return True
        if record.domain != domain:
            logger.info("Certificate domain changed: %s -> %s", record.domain, domain)
            return True
        return False

    def remove_material(self) -> None:
        """Delete certificate, key and record files if present."""
        for path in (self.cert_path, self.key_path, self.record_path):
            try:
                if path.exists():
                    path.unlink()
                    logger.info("Removed %s", path)
            except OSError as e:
                logger.warning("Failed to remove %s: %s", path, e)

    def load_existing(self, domain: str) -> Optional[CertificateMaterial]:
        """Load on-disk material, or None if missing, empty or unreadable."""
        if not (self.cert_path.is_file() and self.key_path.is_file()):
            return None
        try:
            certificate = self.cert_path.read_bytes()
            private_key = self.key_path.read_bytes()
        except OSError as e:
            logger.warning("Failed to read existing certificate: %s", e)
            return None
        if not certificate or not private_key:
            return None
        return CertificateMaterial(
            certificate=certificate,
            private_key=private_key,
            cert_path=self.cert_path,
            key_path=self.key_path,
            domain=domain,
        )

    def ensure(self) -> CertificateMaterial:
        """Return valid certificate material, generating it if needed.

        Raises:
            CertificateGenerationError: If no material could be produced
        """
        domain = self.canonical_domain()

        if self.domain_changed(domain):
            self.remove_material()
        else:
            material = self.load_existing(domain)
            if material is not None:
                logger.info("Using existing certificate for %s", domain)
                return material
            logger.info("Certificate files missing or empty, generating a new one")
            self.remove_material()

        return self.regenerate(domain)

    def renew(self) -> CertificateMaterial:
        """Discard the on-disk material and generate it again.

        Used when existing files are present but the TLS layer rejects them.

        Raises:
            CertificateGenerationError: If no material could be produced
        """
        logger.warning("Discarding unusable certificate material in %s", self.cert_dir)
        self.remove_material()
        return self.regenerate(self.canonical_domain())

    def regenerate(self, domain: str) -> CertificateMaterial:
        """Generate and persist new material for domain.

        Tries the full subjectAltName set first, then a minimal certificate.

        Raises:
            CertificateGenerationError: If both attempts fail or the
                material cannot be written
        """
        alt_names = alternate_names(domain, self.gateway_address(), self.policy.local_suffix)
        logger.info("Generating self-signed certificate for %s", domain)

        try:
            certificate, private_key = self.tool.generate(domain, alt_names)
            logger.info("Certificate generated: CN=%s, SAN=%s", domain, ",".join(alt_names))
        except CertificateToolError as e:
            logger.warning("Certificate generation with alternate names failed: %s", e)
            try:
                certificate, private_key = self.tool.generate(domain, ())
            except CertificateToolError as e2:
                raise CertificateGenerationError(
                    f"Certificate generation failed for {domain}: {e2}"
                ) from e2
            logger.info("Certificate generated without alternate names: CN=%s", domain)
            logger.warning("Certificate may not cover every name or address; some clients may reject it")

        try:
            self.cert_dir.mkdir(parents=True, exist_ok=True)
            _write_file(self.key_path, private_key, 0o600)
            _write_file(self.cert_path, certificate, 0o644)
        except OSError as e:
            self.remove_material()
            raise CertificateGenerationError(
                f"Cannot write certificate material to {self.cert_dir}: {e}"
            ) from e

        record = DomainRecord(domain=domain, generated_at=self._clock())
        try:
            record.save(self.record_path)
        except OSError as e:
            # The material is valid; the next start will just regenerate
            logger.warning("Failed to save certificate record %s: %s", self.record_path, e)

        return CertificateMaterial(
            certificate=certificate,
            private_key=private_key,
            cert_path=self.cert_path,
            key_path=self.key_path,
            domain=domain,
        )


def ensure_certificate(
    cert_dir: Path,
    policy: DomainPolicy,
    tool: Optional[CertificateTool] = None,
    discover: Callable[[], str] = discover_gateway_address,
) -> CertificateMaterial:
    """Convenience wrapper: ensure material in cert_dir for policy."""
    manager = CertificateManager(cert_dir, policy, tool=tool, discover=discover)
    return manager.ensure()
