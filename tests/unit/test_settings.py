"""Settings tests: defaults, validation, env parsing, poll policies."""

from __future__ import annotations

import pytest

from gcp_installer import __version__
from gcp_installer.settings import (
    DEFAULT_ENABLED_APIS,
    InstallConfig,
    InstallerSettings,
    PollPolicy,
    SettingsError,
)


class TestPollPolicy:
    def test_parse_checks_and_interval(self):
        default = PollPolicy(max_checks=30, interval_seconds=10)
        assert PollPolicy.parse('12x5', default=default) == PollPolicy(max_checks=12, interval_seconds=5)

    def test_parse_keeps_backoff_and_reads_initial(self):
        default = PollPolicy(max_checks=30, interval_seconds=2, backoff=1.5, max_interval_seconds=10)
        parsed = PollPolicy.parse('5x1+3', default=default)
        assert parsed.max_checks == 5
        assert parsed.initial_delay_seconds == 3
        assert parsed.backoff == 1.5
        assert parsed.max_interval_seconds == 10

    @pytest.mark.parametrize('raw', ['', '10', 'x5', '10x', 'tenx5'])
    def test_parse_rejects_garbage(self, raw):
        with pytest.raises(SettingsError):
            PollPolicy.parse(raw, default=PollPolicy(max_checks=1, interval_seconds=1))

    def test_rejects_invalid_values(self):
        with pytest.raises(SettingsError):
            PollPolicy(max_checks=0, interval_seconds=1)
        with pytest.raises(SettingsError):
            PollPolicy(max_checks=1, interval_seconds=1, backoff=0.5)

    def test_budget(self):
        policy = PollPolicy(max_checks=3, interval_seconds=2, initial_delay_seconds=1, backoff=2)
        assert policy.budget_seconds == 1 + 2 + 4 + 8


class TestInstallerSettings:
    def test_defaults(self):
        settings = InstallerSettings()
        assert settings.validate() == []
        assert settings.schema_version == __version__
        assert settings.max_attempts == 3
        assert settings.version_critical_steps == ('Creating service accounts',)
        assert 'apigateway.googleapis.com' in settings.enable_apis
        assert settings.operation_poll.max_checks == 30
        assert settings.gateway_ready_poll.initial_delay_seconds == 120

    def test_validate_reports_errors(self):
        settings = InstallerSettings(max_attempts=0, state_encryption_key='k')
        errors = settings.validate()
        assert 'max_attempts must be >= 1' in errors
        assert 'state_encryption_key requires state_dir' in errors

    def test_without_waits_zeroes_sleeps(self):
        fast = InstallerSettings().without_waits()
        assert fast.api_enable_settle_seconds == 0
        assert fast.propagation_retry_delay_seconds == 0
        assert fast.gateway_ready_poll.initial_delay_seconds == 0
        assert fast.gateway_ready_poll.max_checks == 10
        assert fast.max_attempts == 3

    def test_from_env_defaults(self):
        assert InstallerSettings.from_env({}) == InstallerSettings()

    def test_from_env_overrides(self):
        settings = InstallerSettings.from_env(
            {
                'INSTALLER_REGION': 'europe-west1',
                'INSTALLER_SOLUTION_PREFIX': 'acme',
                'INSTALLER_ENABLE_APIS': 'iam.googleapis.com, apikeys.googleapis.com',
                'INSTALLER_VERSION_CRITICAL_STEPS': '',
                'INSTALLER_STATE_TTL_HOURS': '6',
                'INSTALLER_MAX_ATTEMPTS': '5',
                'INSTALLER_GATEWAY_READY_POLL': '20x15+60',
                'INSTALLER_API_KEY_SETTLE_SECONDS': '0',
            }
        )
        assert settings.region == 'europe-west1'
        assert settings.solution_prefix == 'acme'
        assert settings.enable_apis == ('iam.googleapis.com', 'apikeys.googleapis.com')
        assert settings.version_critical_steps == ()
        assert settings.state_ttl_hours == 6
        assert settings.max_attempts == 5
        assert settings.gateway_ready_poll == PollPolicy(
            max_checks=20, interval_seconds=15, initial_delay_seconds=60,
        )
        assert settings.api_key_settle_seconds == 0

    def test_from_env_overrides_every_wait(self):
        settings = InstallerSettings.from_env(
            {
                'INSTALLER_GATEWAY_SERVICE_SETTLE_SECONDS': '1',
                'INSTALLER_MANAGED_SERVICE_SETTLE_SECONDS': '2',
                'INSTALLER_IAM_PROPAGATION_SECONDS': '3',
                'INSTALLER_PROPAGATION_RETRY_ATTEMPTS': '7',
                'INSTALLER_PROPAGATION_RETRY_DELAY_SECONDS': '4',
                'INSTALLER_MAX_REQUEST_TIMEOUT_SECONDS': '900',
                'INSTALLER_BACKOFF_STEP_SECONDS': '0.5',
                'INSTALLER_MANAGED_SERVICE_LOOKUP_ATTEMPTS': '2',
            }
        )
        assert settings.gateway_service_settle_seconds == 1
        assert settings.managed_service_settle_seconds == 2
        assert settings.iam_propagation_seconds == 3
        assert settings.propagation_retry_attempts == 7
        assert isinstance(settings.propagation_retry_attempts, int)
        assert settings.propagation_retry_delay_seconds == 4
        assert settings.max_request_timeout_seconds == 900
        assert settings.backoff_step_seconds == 0.5
        assert settings.managed_service_lookup_attempts == 2

    def test_from_env_rejects_non_numeric(self):
        with pytest.raises(SettingsError, match='INSTALLER_MAX_ATTEMPTS'):
            InstallerSettings.from_env({'INSTALLER_MAX_ATTEMPTS': 'three'})

    def test_default_api_list_has_no_duplicates(self):
        assert len(set(DEFAULT_ENABLED_APIS)) == len(DEFAULT_ENABLED_APIS)


class TestInstallConfig:
    def test_requires_project(self):
        with pytest.raises(ValueError):
            InstallConfig(project_id=' ')

    def test_defaults(self):
        config = InstallConfig(project_id='demo-1')
        assert config.region == 'us-central1'
        assert config.solution_prefix == 'anava'

    @pytest.mark.parametrize(
        'project_id',
        ['../../other?x=', 'Demo-Project', 'short', '1project', 'trailing-', 'demo-1\n', 'a' * 31],
    )
    def test_rejects_malformed_project_id(self, project_id):
        with pytest.raises(ValueError, match='invalid project id'):
            InstallConfig(project_id=project_id)

    @pytest.mark.parametrize('region', ['us central1/..', 'US-CENTRAL1', 'us-central1?x=', 'a' * 50, ''])
    def test_rejects_malformed_region(self, region):
        with pytest.raises(ValueError, match='invalid region'):
            InstallConfig(project_id='demo-1', region=region)

    @pytest.mark.parametrize('prefix', ['BAD PREFIX!', '-anava', 'anava-', 'a/b', 'a' * 17])
    def test_rejects_malformed_prefix(self, prefix):
        with pytest.raises(ValueError, match='invalid solution prefix'):
            InstallConfig(project_id='demo-1', solution_prefix=prefix)

    def test_rejects_non_numeric_project_number(self):
        with pytest.raises(ValueError, match='invalid project number'):
            InstallConfig(project_id='demo-1', project_number='12/34')

    def test_accepts_real_identifiers(self):
        config = InstallConfig(
            project_id='my-project-123456',
            region='northamerica-northeast1',
            solution_prefix='acme-2',
            project_number='123456789012',
        )
        assert config.project_id == 'my-project-123456'
