"""Shared pytest fixtures for filegate tests."""

import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from gate.tls import CertificateToolError  # noqa: E402


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_openssl when openssl is not installed."""
    if shutil.which("openssl"):
        return
    skip_marker = pytest.mark.skip(reason="requires the openssl binary")
    for item in items:
        if "requires_openssl" in item.keywords:
            item.add_marker(skip_marker)


def pytest_configure(config):
    config.addinivalue_line("markers", "requires_openssl: test runs the real openssl binary")


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCertificateTool:
    """CertificateTool double recording every generate() call.

    fail_with_alt_names / fail_always simulate an openssl that rejects the
    subjectAltName extension, or is missing entirely.
    """

    def __init__(self, fail_with_alt_names: bool = False, fail_always: bool = False):
        self.calls = []
        self.fail_with_alt_names = fail_with_alt_names
        self.fail_always = fail_always

    def generate(self, common_name, alt_names):
        self.calls.append((common_name, list(alt_names)))
        if self.fail_always:
            raise CertificateToolError("openssl not found")
        if alt_names and self.fail_with_alt_names:
            raise CertificateToolError("unknown option -extensions")
        n = len(self.calls)
        return (
            f"CERT {common_name} #{n}".encode(),
            f"KEY {common_name} #{n}".encode(),
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_tool():
    return FakeCertificateTool()


@pytest.fixture
def cert_dir(tmp_path):
    return tmp_path / "certs"


@pytest.fixture
def yaml_config_file(tmp_path):
    """Create a YAML gate config."""
    path = tmp_path / "filegate.yaml"
    path.write_text("""
port: 8080
password: s3cret
allowed_hosts:
  - nas.lan
  - 192.168.1.20
enable_https: true
https_port: 8443
use_domain: true
domain_name: files
""")
    return path


@pytest.fixture
def uci_config_file(tmp_path):
    """Create an OpenWrt UCI gate config."""
    path = tmp_path / "fileshare"
    path.write_text("""
config fileshare 'main'
\toption port '3100'
\toption password 'hunter2'
\toption allowed_hosts 'router.lan, 192.168.1.'
\toption enable_https '1'
\toption https_port '3543'
\toption use_domain '0'
\toption domain_name 'share.lan'
""")
    return path
