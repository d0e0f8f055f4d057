"""Installer configuration settings.

InstallerSettings is the single configuration object accepted by the
installer. It is a plain dataclass (not env-coupled) so tests can inject
config without touching os.environ; ``from_env`` is the production factory.

The retry, wait and poll constants were tuned against the provider's
observed propagation latency. They are configuration, not invariants.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace

from . import __version__

DEFAULT_ENABLED_APIS: tuple[str, ...] = (
    'identitytoolkit.googleapis.com',
    'storage.googleapis.com',
    'firebasestorage.googleapis.com',
    'aiplatform.googleapis.com',
    'run.googleapis.com',
    'cloudbuild.googleapis.com',
    'artifactregistry.googleapis.com',
    'logging.googleapis.com',
    'pubsub.googleapis.com',
    'compute.googleapis.com',
    'cloudbilling.googleapis.com',
    'cloudfunctions.googleapis.com',
    'firestore.googleapis.com',
    'firebase.googleapis.com',
    'apigateway.googleapis.com',
    'servicecontrol.googleapis.com',
    'servicemanagement.googleapis.com',
    'apigatewaymanagement.googleapis.com',
    'iamcredentials.googleapis.com',
    'sts.googleapis.com',
    'iam.googleapis.com',
    'cloudresourcemanager.googleapis.com',
    'serviceusage.googleapis.com',
    'endpoints.googleapis.com',
    'apikeys.googleapis.com',
)

# Steps whose side effects changed in a release and must be re-applied to
# installations recorded under an older schema version.
DEFAULT_VERSION_CRITICAL_STEPS: tuple[str, ...] = ('Creating service accounts',)

_POLL_SPEC_RE = re.compile(
    r'^\s*(?P<checks>\d+)\s*x\s*(?P<interval>\d+(?:\.\d+)?)'
    r'(?:\s*\+\s*(?P<initial>\d+(?:\.\d+)?))?\s*$'
)

# Numeric fields overridable as INSTALLER_<FIELD NAME IN UPPER CASE>.
_ENV_FLOAT_FIELDS: tuple[str, ...] = (
    'state_ttl_hours',
    'request_timeout_seconds',
    'max_request_timeout_seconds',
    'backoff_step_seconds',
    'max_backoff_seconds',
    'api_enable_settle_seconds',
    'service_agent_settle_seconds',
    'firebase_settle_seconds',
    'gateway_service_settle_seconds',
    'managed_service_settle_seconds',
    'api_key_settle_seconds',
    'iam_propagation_seconds',
    'propagation_retry_delay_seconds',
    'managed_service_lookup_delay_seconds',
)
_ENV_INT_FIELDS: tuple[str, ...] = (
    'max_attempts',
    'propagation_retry_attempts',
    'managed_service_lookup_attempts',
)

# Values interpolated into REST paths, resource ids and state file names.
_PROJECT_ID_RE = re.compile(r'^[a-z][a-z0-9-]{4,28}[a-z0-9]$')
_REGION_RE = re.compile(r'^[a-z0-9-]{1,49}$')
_PREFIX_RE = re.compile(r'^[a-z](?:[a-z0-9-]{0,14}[a-z0-9])?$')


class SettingsError(ValueError):
    """Raised when a settings value cannot be parsed."""


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """Check budget for one polling loop.

    ``interval_seconds`` grows by ``backoff`` after every check, capped at
    ``max_interval_seconds`` when given.
    """

    max_checks: int
    interval_seconds: float
    initial_delay_seconds: float = 0.0
    backoff: float = 1.0
    max_interval_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_checks < 1:
            raise SettingsError('max_checks must be >= 1')
        if self.interval_seconds < 0 or self.initial_delay_seconds < 0:
            raise SettingsError('poll intervals must be >= 0')
        if self.backoff < 1.0:
            raise SettingsError('backoff must be >= 1.0')

    def next_interval(self, interval: float) -> float:
        grown = interval * self.backoff
        if self.max_interval_seconds is not None:
            grown = min(grown, self.max_interval_seconds)
        return grown

    @property
    def budget_seconds(self) -> float:
        """Upper bound of time spent sleeping across the whole loop."""
        total = self.initial_delay_seconds
        interval = self.interval_seconds
        for _ in range(self.max_checks):
            total += interval
            interval = self.next_interval(interval)
        return total

    @classmethod
    def parse(cls, raw: str, *, default: PollPolicy) -> PollPolicy:
        """Parse ``"<checks>x<interval>[+<initial>]"``, keeping ``default``'s backoff."""
        match = _POLL_SPEC_RE.match(raw)
        if match is None:
            raise SettingsError(
                f'invalid poll policy {raw!r}; expected "<checks>x<seconds>[+<initial>]"'
            )
        initial = match.group('initial')
        return replace(
            default,
            max_checks=int(match.group('checks')),
            interval_seconds=float(match.group('interval')),
            initial_delay_seconds=(
                float(initial) if initial is not None else default.initial_delay_seconds
            ),
        )


@dataclass(frozen=True, slots=True)
class InstallConfig:
    """Target of a single installation attempt."""

    project_id: str
    region: str = 'us-central1'
    solution_prefix: str = 'anava'
    project_display_name: str = ''
    project_number: str | None = None

    def __post_init__(self) -> None:
        if not self.project_id or not self.project_id.strip():
            raise ValueError('project_id is required')
        if not _PROJECT_ID_RE.fullmatch(self.project_id):
            raise ValueError(
                f'invalid project id {self.project_id!r}: 6-30 lowercase letters, digits or '
                'hyphens, starting with a letter'
            )
        if not _REGION_RE.fullmatch(self.region):
            raise ValueError(f'invalid region {self.region!r}')
        if not self.solution_prefix:
            raise ValueError('solution_prefix is required')
        if not _PREFIX_RE.fullmatch(self.solution_prefix):
            raise ValueError(
                f'invalid solution prefix {self.solution_prefix!r}: up to 16 lowercase '
                'letters, digits or hyphens, starting with a letter'
            )
        if self.project_number is not None and not self.project_number.isdigit():
            raise ValueError(f'invalid project number {self.project_number!r}')


@dataclass(frozen=True, slots=True)
class InstallerSettings:
    """Configuration for the provisioning installer.

    All fields have defaults matching the provider's observed latency.
    Tests typically zero the wait fields and shrink the poll policies.
    """

    # ── Deployment defaults ────────────────────────────────────────
    region: str = 'us-central1'
    solution_prefix: str = 'anava'
    enable_apis: tuple[str, ...] = DEFAULT_ENABLED_APIS

    # ── Resumable state ────────────────────────────────────────────
    schema_version: str = __version__
    """Installer build version stamped on every persisted record."""

    version_critical_steps: tuple[str, ...] = DEFAULT_VERSION_CRITICAL_STEPS
    state_ttl_hours: float = 24.0
    state_dir: str = ''
    """Directory for persisted state. Empty keeps state in memory only; the CLI
    always supplies one."""

    state_encryption_key: str = ''
    """Fernet key for encrypted-at-rest state. Never log this."""

    # ── Call client ────────────────────────────────────────────────
    max_attempts: int = 3
    request_timeout_seconds: float = 300.0
    max_request_timeout_seconds: float = 600.0
    backoff_step_seconds: float = 2.0
    max_backoff_seconds: float = 10.0

    # ── Poll policies ──────────────────────────────────────────────
    operation_poll: PollPolicy = field(
        default_factory=lambda: PollPolicy(max_checks=30, interval_seconds=10.0)
    )
    config_activation_poll: PollPolicy = field(
        default_factory=lambda: PollPolicy(max_checks=60, interval_seconds=10.0)
    )
    gateway_ready_poll: PollPolicy = field(
        default_factory=lambda: PollPolicy(
            max_checks=10, interval_seconds=30.0, initial_delay_seconds=120.0,
        )
    )
    api_key_poll: PollPolicy = field(
        default_factory=lambda: PollPolicy(
            max_checks=30,
            interval_seconds=2.0,
            initial_delay_seconds=2.0,
            backoff=1.5,
            max_interval_seconds=10.0,
        )
    )

    # ── Propagation waits ──────────────────────────────────────────
    api_enable_settle_seconds: float = 60.0
    service_agent_settle_seconds: float = 10.0
    firebase_settle_seconds: float = 30.0
    gateway_service_settle_seconds: float = 60.0
    managed_service_settle_seconds: float = 30.0
    api_key_settle_seconds: float = 120.0
    iam_propagation_seconds: float = 5.0
    propagation_retry_attempts: int = 3
    propagation_retry_delay_seconds: float = 30.0
    managed_service_lookup_attempts: int = 5
    managed_service_lookup_delay_seconds: float = 20.0

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.max_attempts < 1:
            errors.append('max_attempts must be >= 1')
        if self.request_timeout_seconds <= 0:
            errors.append('request_timeout_seconds must be > 0')
        if self.max_request_timeout_seconds < self.request_timeout_seconds:
            errors.append('max_request_timeout_seconds must be >= request_timeout_seconds')
        if self.state_ttl_hours <= 0:
            errors.append('state_ttl_hours must be > 0')
        if self.propagation_retry_attempts < 1:
            errors.append('propagation_retry_attempts must be >= 1')
        if self.state_encryption_key and not self.state_dir:
            errors.append('state_encryption_key requires state_dir')
        if not self.schema_version:
            errors.append('schema_version is required')
        return errors

    def without_waits(self) -> InstallerSettings:
        """Copy with every fixed wait and poll interval set to zero."""
        return replace(
            self,
            backoff_step_seconds=0.0,
            max_backoff_seconds=0.0,
            operation_poll=replace(self.operation_poll, interval_seconds=0.0, initial_delay_seconds=0.0),
            config_activation_poll=replace(
                self.config_activation_poll, interval_seconds=0.0, initial_delay_seconds=0.0,
            ),
            gateway_ready_poll=replace(
                self.gateway_ready_poll, interval_seconds=0.0, initial_delay_seconds=0.0,
            ),
            api_key_poll=replace(self.api_key_poll, interval_seconds=0.0, initial_delay_seconds=0.0),
            api_enable_settle_seconds=0.0,
            service_agent_settle_seconds=0.0,
            firebase_settle_seconds=0.0,
            gateway_service_settle_seconds=0.0,
            managed_service_settle_seconds=0.0,
            api_key_settle_seconds=0.0,
            iam_propagation_seconds=0.0,
            propagation_retry_delay_seconds=0.0,
            managed_service_lookup_delay_seconds=0.0,
        )

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> InstallerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct InstallerSettings directly.
        """
        if env is None:
            env = dict(os.environ)
        defaults = cls()

        apis_raw = env.get('INSTALLER_ENABLE_APIS', '')
        apis = (
            tuple(a.strip() for a in apis_raw.split(',') if a.strip())
            if apis_raw else defaults.enable_apis
        )
        critical_raw = env.get('INSTALLER_VERSION_CRITICAL_STEPS')
        critical = (
            tuple(s.strip() for s in critical_raw.split(',') if s.strip())
            if critical_raw is not None else defaults.version_critical_steps
        )

        def _poll(name: str, default: PollPolicy) -> PollPolicy:
            raw = env.get(name, '').strip()
            return PollPolicy.parse(raw, default=default) if raw else default

        numbers: dict[str, float | int] = {
            name: _float(env, f'INSTALLER_{name.upper()}', getattr(defaults, name))
            for name in _ENV_FLOAT_FIELDS
        }
        for name in _ENV_INT_FIELDS:
            numbers[name] = int(_float(env, f'INSTALLER_{name.upper()}', getattr(defaults, name)))

        return cls(
            region=env.get('INSTALLER_REGION', defaults.region),
            solution_prefix=env.get('INSTALLER_SOLUTION_PREFIX', defaults.solution_prefix),
            enable_apis=apis,
            schema_version=env.get('INSTALLER_SCHEMA_VERSION', defaults.schema_version),
            version_critical_steps=critical,
            state_dir=env.get('INSTALLER_STATE_DIR', ''),
            state_encryption_key=env.get('INSTALLER_STATE_KEY', ''),
            operation_poll=_poll('INSTALLER_OPERATION_POLL', defaults.operation_poll),
            config_activation_poll=_poll(
                'INSTALLER_CONFIG_ACTIVATION_POLL', defaults.config_activation_poll,
            ),
            gateway_ready_poll=_poll('INSTALLER_GATEWAY_READY_POLL', defaults.gateway_ready_poll),
            api_key_poll=_poll('INSTALLER_API_KEY_POLL', defaults.api_key_poll),
            **numbers,
        )


def _float(env: dict[str, str], name: str, default: float) -> float:
    raw = env.get(name, '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise SettingsError(f'{name} must be a number, got {raw!r}') from exc
