"""Command-line entry point.

Usage:
    export GCP_ACCESS_TOKEN="$(gcloud auth print-access-token)"
    python -m gcp_installer --project my-project --functions-dir ./functions

    # Start over, ignoring any recorded progress
    python -m gcp_installer --project my-project --functions-dir ./functions --fresh

    # Replace the API key of an existing installation
    python -m gcp_installer --project my-project --regenerate-api-key

Environment variables:
    GCP_ACCESS_TOKEN  (required) OAuth bearer token with owner rights on the project
    XDG_CONFIG_HOME   (optional) parent of the default state directory
    INSTALLER_*       (optional) settings overrides, see ``InstallerSettings.from_env``
    LOG_LEVEL         (optional) log level (default: INFO)

State:
    Progress is recorded, Fernet-encrypted, under
    ``$XDG_CONFIG_HOME/gcp-installer/state`` (default ``~/.config``) so an
    interrupted run resumes where it stopped. The key is generated on first
    use and kept beside the directory as ``state.key`` (mode 0600).

Output:
    Progress and logs to stderr. Final ``export`` lines (or JSON) to stdout.
    Exit code 0 on success, 2 on missing prerequisites, 3 on an expired
    credential, 1 on any other failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path

from .client import GcpAuthError
from .credentials import BearerCredential
from .errors import ErrorKind, InstallationAborted, InstallerError, StepFailedError
from .observability import configure_logging
from .prerequisites import PrerequisitesMissingError
from .provisioning import CloudInstaller, DirectoryFunctionSources
from .settings import InstallConfig, InstallerSettings, SettingsError
from .state import default_state_dir, load_or_create_key

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PREREQUISITES = 2
EXIT_CREDENTIAL_EXPIRED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gcp-installer',
        description='Provision the device backend into a Google Cloud project.',
    )
    parser.add_argument('--project', required=True, help='target project id')
    parser.add_argument('--region', default=None, help='deployment region')
    parser.add_argument('--prefix', default=None, help='solution prefix for resource names')
    parser.add_argument('--display-name', default='', help='project display name')
    parser.add_argument(
        '--functions-dir',
        default=None,
        help='directory holding device-auth/ and tvm/ function sources',
    )
    parser.add_argument(
        '--fresh',
        action='store_true',
        help='discard recorded progress before installing',
    )
    parser.add_argument(
        '--regenerate-api-key',
        action='store_true',
        help='replace the API key of an existing installation and exit',
    )
    parser.add_argument(
        '--state-dir',
        default=None,
        help='where installation progress is recorded (default: ~/.config/gcp-installer/state)',
    )
    parser.add_argument('--json', action='store_true', help='print the result as JSON')
    return parser


def _with_persistent_state(settings: InstallerSettings, state_dir: str | None) -> InstallerSettings:
    """Point settings at an on-disk, encrypted state directory."""
    directory = Path(state_dir or settings.state_dir or default_state_dir())
    key = settings.state_encryption_key or load_or_create_key(
        directory.with_name(f'{directory.name}.key')
    )
    return replace(settings, state_dir=str(directory), state_encryption_key=key)


def _print_progress(label: str, percent: int) -> None:
    print(f'[{percent:3d}%] {label}', file=sys.stderr)


def _print_remediation(error: PrerequisitesMissingError) -> None:
    print('Setup cannot continue until these are fixed:', file=sys.stderr)
    for item in error.remediation:
        print(f'  - {item.title}: {item.description}', file=sys.stderr)
        for sub_step in item.sub_steps:
            print(f'      * {sub_step}', file=sys.stderr)
        print(f'    {item.action_label}: {item.action_url}', file=sys.stderr)


async def _run(args: argparse.Namespace, installer: CloudInstaller) -> int:
    if args.regenerate_api_key:
        outcome = await installer.regenerate_api_key()
        if args.json:
            print(json.dumps(outcome, indent=2))
        else:
            for warning in outcome['warnings']:
                print(f'warning: {warning}', file=sys.stderr)
            if outcome['api_key']:
                print(f'export API_GATEWAY_API_KEY="{outcome["api_key"]}"')
        return EXIT_OK if outcome['api_key'] else EXIT_FAILED

    if args.fresh:
        installer.clear_state()
    result = await installer.install()
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_OK

    for warning in result.warnings:
        print(f'warning: {warning}', file=sys.stderr)
    for step in result.next_steps:
        print(f'next: {step}', file=sys.stderr)
    print(result.to_env_assignments())
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    token = os.environ.get('GCP_ACCESS_TOKEN', '').strip()
    if not token:
        print('GCP_ACCESS_TOKEN is not set', file=sys.stderr)
        return EXIT_FAILED

    try:
        settings = InstallerSettings.from_env()
    except SettingsError as exc:
        print(f'Invalid settings: {exc}', file=sys.stderr)
        return EXIT_FAILED

    try:
        config = InstallConfig(
            project_id=args.project,
            region=args.region or settings.region,
            solution_prefix=args.prefix or settings.solution_prefix,
            project_display_name=args.display_name,
        )
    except ValueError as exc:
        print(f'Invalid arguments: {exc}', file=sys.stderr)
        return EXIT_FAILED
    settings = replace(settings, region=config.region, solution_prefix=config.solution_prefix)

    if not args.regenerate_api_key and not args.functions_dir:
        print('--functions-dir is required to install', file=sys.stderr)
        return EXIT_FAILED
    sources = DirectoryFunctionSources(args.functions_dir) if args.functions_dir else None

    try:
        settings = _with_persistent_state(settings, args.state_dir)
    except OSError as exc:
        print(f'Cannot prepare state directory: {exc}', file=sys.stderr)
        return EXIT_FAILED

    credential = BearerCredential(token)
    installer = CloudInstaller(
        credential,
        config,
        settings=settings,
        function_sources=sources,
        progress=_print_progress,
    )

    try:
        return asyncio.run(_run(args, installer))
    except StepFailedError as exc:
        if exc.kind is ErrorKind.MISSING_PREREQUISITE and isinstance(exc.cause, PrerequisitesMissingError):
            _print_remediation(exc.cause)
            return EXIT_PREREQUISITES
        print(str(exc), file=sys.stderr)
        if exc.credential_expired:
            print('Sign in again and re-run; completed steps will be skipped.', file=sys.stderr)
            return EXIT_CREDENTIAL_EXPIRED
        return EXIT_FAILED
    except InstallationAborted as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILED
    except GcpAuthError as exc:
        print(f'Credential rejected: {exc.message}', file=sys.stderr)
        return EXIT_CREDENTIAL_EXPIRED
    except InstallerError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print('Interrupted; re-run to resume.', file=sys.stderr)
        return EXIT_FAILED
    finally:
        credential.revoke()
