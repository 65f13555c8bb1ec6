"""Tests for twotier/remote_setup.py — post-provisioning steps."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import pytest

from twotier.agent import RemoteAgentError
from twotier.config import DeploymentConfig
from twotier.credentials import Credentials
from twotier.errors import RemoteSetupError
from twotier.remote_setup import (
    HTTP_FIREWALL_RULE,
    SQL_FIREWALL_RULE,
    configure_sql_server,
    configure_web_server,
    install_web_application,
    open_firewall_port,
    render_app_parameters,
)
from twotier.transfer import TransferStatus


@pytest.fixture()
def installer(tmp_path: Path) -> Path:
    path = tmp_path / "WebPICMD.exe"
    path.write_bytes(b"MZ" + bytes(3000))
    return path


class TestFirewall:
    def test_rule_created_once(self, fake_session) -> None:
        assert open_firewall_port(fake_session, "TwoTier HTTP", 80) is True
        assert open_firewall_port(fake_session, "TwoTier HTTP", 80) is False
        assert fake_session.firewall_rules == {"TwoTier HTTP": (80, "TCP")}


class TestConfigureSqlServer:
    def test_configures_back_end(self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials) -> None:
        configure_sql_server(fake_session, deploy_config, credentials)

        assert fake_session.login_mode == 2
        assert fake_session.sql_logins == {"webapp": "S3cret!pass"}
        assert fake_session.firewall_rules[SQL_FIREWALL_RULE] == (1433, "TCP")
        assert fake_session.ops() == ["enable_sql_mixed_mode", "create_sql_login", "ensure_firewall_rule"]

    def test_password_travels_on_stdin(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials
    ) -> None:
        configure_sql_server(fake_session, deploy_config, credentials)
        _, arguments, payload = fake_session.calls[1]
        assert arguments == {"instance": "MSSQLSERVER", "login": "webapp"}
        assert payload == b"S3cret!pass"

    def test_rerun_reports_existing_mode(
        self,
        fake_session,
        deploy_config: DeploymentConfig,
        credentials: Credentials,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        configure_sql_server(fake_session, deploy_config, credentials)
        with caplog.at_level(logging.INFO, logger="twotier.remote_setup"):
            configure_sql_server(fake_session, deploy_config, credentials)
        assert "already uses mixed-mode" in caplog.text


class TestConfigureWebServer:
    def test_opens_http(self, fake_session, deploy_config: DeploymentConfig) -> None:
        configure_web_server(fake_session, deploy_config)
        assert fake_session.firewall_rules == {HTTP_FIREWALL_RULE: (80, "TCP")}


class TestInstallWebApplication:
    def test_render_parameters(self, deploy_config: DeploymentConfig, credentials: Credentials) -> None:
        text = render_app_parameters(deploy_config, "contoso-sql", credentials)
        lines = text.split("\r\n")
        assert lines[0] == "Application Path=Default Web Site/blog"
        assert "Database Server=contoso-sql" in lines
        assert "Database Username=webapp" in lines
        assert "Database Administrator=azureadmin" in lines
        assert text.endswith("\r\n")

    def test_uploads_and_installs(
        self,
        fake_session,
        deploy_config: DeploymentConfig,
        credentials: Credentials,
        installer: Path,
    ) -> None:
        config = replace(deploy_config, webapp_installer=installer)
        transfers = install_web_application(fake_session, config, "contoso-sql", credentials)

        assert [t.dest_path for t in transfers] == [
            r"C:\TwoTier\staging\WebPICMD.exe",
            r"C:\TwoTier\staging\webapp.app",
        ]
        assert all(t.status == TransferStatus.COMPLETE for t in transfers)
        assert fake_session.files[r"C:\TwoTier\staging\WebPICMD.exe"] == installer.read_bytes()
        # 3002 bytes in 1024-byte segments
        assert transfers[0].segments_sent == 3

        [install] = fake_session.installs
        assert install["installer"] == r"C:\TwoTier\staging\WebPICMD.exe"
        assert install["product"] == "DasBlog"
        assert "Database Server=contoso-sql\r\n" in install["parameters"]

    def test_progress_forwarded(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials, installer: Path
    ) -> None:
        seen = []
        config = replace(deploy_config, webapp_installer=installer)
        install_web_application(fake_session, config, "contoso-sql", credentials, on_progress=seen.append)
        assert len(seen) >= 4

    def test_no_installer_configured(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials
    ) -> None:
        with pytest.raises(RemoteSetupError, match="webapp_installer"):
            install_web_application(fake_session, deploy_config, "contoso-sql", credentials)
        assert fake_session.calls == []

    def test_installer_failure(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials, installer: Path
    ) -> None:
        fake_session.install_exit_code = 1603
        config = replace(deploy_config, webapp_installer=installer)
        with pytest.raises(RemoteSetupError, match="exit code 1603"):
            install_web_application(fake_session, config, "contoso-sql", credentials)
        assert r"C:\TwoTier\staging\webapp.app" not in fake_session.files

    def test_parameters_file_removed_after_install(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials, installer: Path
    ) -> None:
        config = replace(deploy_config, webapp_installer=installer)
        install_web_application(fake_session, config, "contoso-sql", credentials)

        assert fake_session.ops()[-2:] == ["install_webpi_product", "remove_file"]
        assert r"C:\TwoTier\staging\webapp.app" not in fake_session.files
        assert r"C:\TwoTier\staging\WebPICMD.exe" in fake_session.files

    def test_parameters_file_removed_when_install_errors(
        self, fake_session, deploy_config: DeploymentConfig, credentials: Credentials, installer: Path
    ) -> None:
        fake_session.fail_on("install_webpi_product")
        config = replace(deploy_config, webapp_installer=installer)
        with pytest.raises(RemoteAgentError):
            install_web_application(fake_session, config, "contoso-sql", credentials)
        assert fake_session.ops()[-1] == "remove_file"
        assert r"C:\TwoTier\staging\webapp.app" not in fake_session.files
