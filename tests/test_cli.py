"""Tests for gate/cli.py - command dispatch and output."""

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeCertificateTool
from gate.cli import main
from gate.tls import CertificateGenerationError, CertificateManager


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_help(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: filegate <command>' in out
        assert 'serve' in out

    def test_help_flag(self, capsys):
        assert main(['--help']) == 0
        assert 'Commands:' in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(['frobnicate']) == 1
        out = capsys.readouterr().out
        assert "Unknown command 'frobnicate'" in out
        assert 'serve, cert, classify' in out


class TestClassifyCommand:
    """Tests for 'filegate classify'."""

    def test_classifies_each_address(self, capsys):
        assert main(['classify', '192.168.1.5', '8.8.8.8', '::ffff:10.0.0.1']) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines == [
            '192.168.1.5: private',
            '8.8.8.8: external',
            '::ffff:10.0.0.1: private',
        ]

    def test_requires_address(self):
        with pytest.raises(SystemExit):
            main(['classify'])


class TestCertCommand:
    """Tests for 'filegate cert'."""

    @pytest.fixture
    def fake_manager(self, monkeypatch):
        """Build real managers backed by the fake tool."""
        tool = FakeCertificateTool()

        def factory(cert_dir, policy):
            return CertificateManager(cert_dir, policy, tool=tool, discover=lambda: '192.168.1.1')

        monkeypatch.setattr('gate.cli.CertificateManager', factory)
        monkeypatch.setattr('gate.tls.certificate_fingerprint', lambda pem: 'AA:BB')
        return tool

    def test_text_output(self, fake_manager, tmp_path, yaml_config_file, capsys):
        cert_dir = tmp_path / 'out'
        rc = main(['cert', '-c', str(yaml_config_file), '--cert-dir', str(cert_dir)])
        assert rc == 0
        out = capsys.readouterr().out
        assert 'Domain:      files.lan' in out
        assert f'Certificate: {cert_dir / "server.crt"}' in out
        assert 'Fingerprint: AA:BB' in out
        assert (cert_dir / 'server.key').exists()

    def test_json_output(self, fake_manager, tmp_path, yaml_config_file, capsys):
        cert_dir = tmp_path / 'out'
        rc = main(['cert', '-c', str(yaml_config_file), '--cert-dir', str(cert_dir), '--json'])
        assert rc == 0
        info = json.loads(capsys.readouterr().out)
        assert info['domain'] == 'files.lan'
        assert info['key'] == str(cert_dir / 'server.key')
        assert info['generatedAt']

    def test_generation_failure(self, tmp_path, yaml_config_file):
        manager = MagicMock()
        manager.ensure.side_effect = CertificateGenerationError('openssl not found')
        with patch('gate.cli.CertificateManager', return_value=manager):
            rc = main(['cert', '-c', str(yaml_config_file), '--cert-dir', str(tmp_path)])
        assert rc == 1


class TestServeCommand:
    """Tests for 'filegate serve'."""

    @patch('gate.cli.Server')
    def test_start_failure(self, mock_server_class, yaml_config_file):
        mock_server_class.return_value.start.side_effect = RuntimeError('TLS init failed')
        assert main(['serve', '-c', str(yaml_config_file)]) == 1
        mock_server_class.return_value.serve_forever.assert_not_called()

    @patch('gate.cli.Server')
    def test_runs_until_stopped(self, mock_server_class, yaml_config_file, capsys):
        server = mock_server_class.return_value
        server.scheme = 'https'
        server.config.bind = '0.0.0.0'
        server.port = 8443
        server.material.fingerprint = 'AA:BB'

        assert main(['serve', '-c', str(yaml_config_file)]) == 0
        server.serve_forever.assert_called_once()
        out = capsys.readouterr().out
        assert 'Server running at https://0.0.0.0:8443' in out
        assert 'Certificate fingerprint: AA:BB' in out
