"""Command-line runs resuming from on-disk state.

Each ``cli.main`` call is a separate event loop with a freshly built
installer, so nothing but the state directory carries progress from one
run to the next.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from gcp_installer import cli
from gcp_installer.provisioning import CloudInstaller
from gcp_installer.settings import PollPolicy

from tests.integration.stubs.gcp_api import FakeGcpApi

# ─────────────────────── fixtures ───────────────────────


@pytest.fixture
def api():
    return FakeGcpApi(project_id='demo-1')


@pytest.fixture
def functions_dir(tmp_path):
    root = tmp_path / 'functions'
    for kind, body in (('device-auth', 'device_authenticator'), ('tvm', 'token_vendor_machine')):
        (root / kind).mkdir(parents=True)
        (root / kind / 'main.py').write_text(f'def {body}(request):\n    return "ok"\n')
    return root


@pytest.fixture
def wired_cli(api, monkeypatch, tmp_path):
    """Route the CLI's installer to the fake control plane with every wait zeroed."""
    clients: list[httpx.AsyncClient] = []

    def _installer(credential, config, *, settings, **kwargs):
        fast = replace(
            settings.without_waits(),
            gateway_ready_poll=PollPolicy(max_checks=3, interval_seconds=0.0),
            config_activation_poll=PollPolicy(max_checks=5, interval_seconds=0.0),
            operation_poll=PollPolicy(max_checks=5, interval_seconds=0.0),
            api_key_poll=PollPolicy(max_checks=5, interval_seconds=0.0),
        )
        client = httpx.AsyncClient(transport=api.transport())
        clients.append(client)
        return CloudInstaller(credential, config, settings=fast, http_client=client, **kwargs)

    monkeypatch.setattr(cli, 'CloudInstaller', _installer)
    monkeypatch.setattr(cli, 'configure_logging', lambda: None)
    monkeypatch.setenv('GCP_ACCESS_TOKEN', 'ya29.cli-token')
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path / 'config'))
    for name in ('INSTALLER_STATE_DIR', 'INSTALLER_STATE_KEY', 'INSTALLER_REGION', 'INSTALLER_SOLUTION_PREFIX'):
        monkeypatch.delenv(name, raising=False)
    yield cli
    for client in clients:
        asyncio.run(client.aclose())


def _state_dir(tmp_path):
    return tmp_path / 'config' / 'gcp-installer' / 'state'


# ─────────────────────── resume ───────────────────────


class TestCliResume:
    def test_second_run_skips_completed_steps(self, wired_cli, api, functions_dir, capsys):
        argv = ['--project', 'demo-1', '--functions-dir', str(functions_dir)]
        assert wired_cli.main(argv) == cli.EXIT_OK
        first_out = capsys.readouterr().out
        requests_after_first = len(api.request_log)

        assert wired_cli.main(argv) == cli.EXIT_OK
        out, err = capsys.readouterr()

        assert len(api.request_log) == requests_after_first
        assert '✓ Checking prerequisites (already completed)' in err
        assert '✓ Generating API keys (already completed)' in err
        for name in ('API_GATEWAY_BASE_URL', 'API_GATEWAY_API_KEY'):
            line = next(entry for entry in first_out.splitlines() if entry.startswith(f'export {name}='))
            assert line in out.splitlines()

    def test_resumes_after_failed_run(self, wired_cli, api, functions_dir, capsys):
        argv = ['--project', 'demo-1', '--functions-dir', str(functions_dir)]
        api.fail('GET', '/billingInfo', 401, 'Request had invalid authentication credentials')

        assert wired_cli.main(argv) == cli.EXIT_CREDENTIAL_EXPIRED
        capsys.readouterr()

        assert wired_cli.main(argv) == cli.EXIT_OK
        err = capsys.readouterr().err
        assert '✓ Checking prerequisites (already completed)' in err
        assert '✓ Validating project (already completed)' not in err

    def test_state_is_encrypted_on_disk(self, wired_cli, functions_dir, tmp_path):
        assert wired_cli.main(['--project', 'demo-1', '--functions-dir', str(functions_dir)]) == cli.EXIT_OK

        (record,) = _state_dir(tmp_path).glob('*.state')
        raw = record.read_bytes()
        assert b'demo-1' not in raw
        assert b'AIzaFakeKey' not in raw

    def test_fresh_discards_recorded_progress(self, wired_cli, api, functions_dir, capsys):
        argv = ['--project', 'demo-1', '--functions-dir', str(functions_dir)]
        assert wired_cli.main(argv) == cli.EXIT_OK
        capsys.readouterr()

        assert wired_cli.main([*argv, '--fresh']) == cli.EXIT_OK
        assert '(already completed)' not in capsys.readouterr().err
