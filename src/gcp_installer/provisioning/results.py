"""Final installation result and its env-style rendering."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from ..settings import InstallConfig
from .functions import DEVICE_AUTH, TVM
from .naming import ResourceNames, email_value_key
from .orchestrator import OrchestrationOutcome


@dataclass(slots=True)
class InstallResult:
    success: bool
    project_id: str
    region: str
    solution_prefix: str
    api_gateway_url: str
    api_key: str = ''
    firebase_web_api_key: str = ''
    configuration: dict[str, str] = field(default_factory=dict)
    next_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    should_retry_later: bool = False
    resumed_installation: bool = False
    skipped_steps: list[str] = field(default_factory=list)

    def to_env_assignments(self) -> str:
        """Render ``configuration`` as shell ``export`` lines, skipping blanks."""
        lines = []
        for key, value in self.configuration.items():
            if not value:
                continue
            escaped = value.replace('\\', '\\\\').replace('"', '\\"')
            lines.append(f'export {key}="{escaped}"')
        return '\n'.join(lines)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _next_steps(config: InstallConfig, names: ResourceNames, values: dict[str, Any]) -> list[str]:
    steps: list[str] = []
    project = config.project_id
    if not values.get('api_key'):
        steps.append(
            'Create an API key: wait a few minutes, then visit '
            f'https://console.cloud.google.com/apis/credentials?project={project} and '
            f'restrict it to {values.get("managed_service") or names.expected_managed_service}'
        )
    if not values.get('firebase_web_api_key'):
        steps.append(
            'Copy the Firebase web API key from '
            f'https://console.firebase.google.com/project/{project}/settings/general'
        )
    steps.append(
        'Enable the Email/Password sign-in provider at '
        f'https://console.firebase.google.com/project/{project}/authentication/providers'
    )
    return steps


def compile_results(
    config: InstallConfig,
    values: dict[str, Any],
    outcome: OrchestrationOutcome,
) -> InstallResult:
    """Build the final result, filling naming-convention defaults for missing values."""
    names = ResourceNames.for_config(config)
    project_number = config.project_number or values.get('project_number') or ''
    gateway_url = values.get('api_gateway_url') or (
        f'https://{names.expected_gateway_hostname(project_number or None)}'
    )
    api_key = values.get('api_key') or ''
    web_key = values.get('firebase_web_api_key') or ''

    configuration = {
        'API_GATEWAY_BASE_URL': gateway_url,
        'API_GATEWAY_API_KEY': api_key,
        'FIREBASE_WEB_API_KEY': web_key,
        'GCP_PROJECT_ID': config.project_id,
        'GCP_PROJECT_NUMBER': str(project_number),
        'GCP_REGION': config.region,
    }
    for sa_id in ('vertex-ai-sa', 'device-auth-sa', 'tvm-sa', 'apigw-invoker-sa'):
        key = email_value_key(sa_id)
        configuration[key.upper()] = values.get(key) or names.service_account_email(sa_id)
    configuration['DEVICE_AUTH_FUNCTION_URL'] = values.get('device_auth_url') or names.function_url(DEVICE_AUTH)
    configuration['TVM_FUNCTION_URL'] = values.get('tvm_url') or names.function_url(TVM)
    configuration['WIF_POOL_ID'] = values.get('workload_identity_pool_id') or names.pool_id
    configuration['WIF_PROVIDER_ID'] = values.get('workload_identity_provider_id') or names.provider_id

    return InstallResult(
        success=True,
        project_id=config.project_id,
        region=config.region,
        solution_prefix=config.solution_prefix,
        api_gateway_url=gateway_url,
        api_key=api_key,
        firebase_web_api_key=web_key,
        configuration=configuration,
        next_steps=_next_steps(config, names, values),
        warnings=list(outcome.warnings),
        should_retry_later=outcome.should_retry_later,
        resumed_installation=outcome.resumed,
        skipped_steps=[s.name for s in outcome.skipped_steps],
    )
