"""Deterministic resource names derived from the solution prefix."""

from __future__ import annotations

from dataclasses import dataclass

from ..settings import InstallConfig

SERVICE_ACCOUNTS: tuple[tuple[str, str], ...] = (
    ('vertex-ai-sa', 'Vertex AI Main SA'),
    ('device-auth-sa', 'Device Auth Function SA'),
    ('tvm-sa', 'Token Vending Machine SA'),
    ('apigw-invoker-sa', 'API Gateway Invoker SA'),
)

# Regions that host API Gateway gateways.
GATEWAY_REGIONS = frozenset(
    {
        'asia-northeast1',
        'australia-southeast1',
        'europe-west1',
        'europe-west2',
        'us-central1',
        'us-east1',
        'us-east4',
        'us-west2',
        'us-west3',
        'us-west4',
    }
)
FALLBACK_GATEWAY_REGION = 'us-central1'


def email_value_key(sa_id: str) -> str:
    """``'vertex-ai-sa'`` -> ``'vertex_ai_sa_email'``."""
    return f"{sa_id.replace('-', '_')}_email"


@dataclass(frozen=True, slots=True)
class ResourceNames:
    project_id: str
    region: str
    prefix: str

    @classmethod
    def for_config(cls, config: InstallConfig) -> ResourceNames:
        return cls(config.project_id, config.region, config.solution_prefix)

    def account_id(self, sa_id: str) -> str:
        return f'{self.prefix}-{sa_id}'

    def service_account_email(self, sa_id: str) -> str:
        return f'{self.account_id(sa_id)}@{self.project_id}.iam.gserviceaccount.com'

    def function_name(self, kind: str) -> str:
        return f'{self.prefix}-{kind}'

    def function_url(self, kind: str) -> str:
        return f'https://{self.region}-{self.project_id}.cloudfunctions.net/{self.function_name(kind)}'

    @property
    def pool_id(self) -> str:
        return f'{self.prefix}-device-pool'

    @property
    def provider_id(self) -> str:
        return f'{self.prefix}-firebase-provider'

    @property
    def api_id(self) -> str:
        return f'{self.prefix}-device-api'

    @property
    def gateway_id(self) -> str:
        return f'{self.prefix}-gateway'

    @property
    def key_display_name(self) -> str:
        return f'{self.prefix}-device-key'

    @property
    def expected_managed_service(self) -> str:
        return f'{self.api_id}.apigateway.{self.project_id}.cloud.goog'

    @property
    def gateway_region(self) -> str:
        if self.region in GATEWAY_REGIONS:
            return self.region
        return FALLBACK_GATEWAY_REGION

    def expected_gateway_hostname(self, project_number: str | None = None) -> str:
        return f'{self.gateway_id}-{project_number or self.project_id}.{self.gateway_region}.gateway.dev'

    @staticmethod
    def gateway_service_agent(project_number: str) -> str:
        return f'service-{project_number}@gcp-sa-apigateway.iam.gserviceaccount.com'
