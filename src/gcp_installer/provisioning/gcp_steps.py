"""Concrete provisioning steps for one GCP project.

Every step is idempotent: an existing resource is read back and reused, a
409 on create counts as success, and IAM grants are additive. Steps return
``StepResult`` values consumed by later steps and by result compilation;
the persisted resource snippet of each step is stored under its own kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from ..client.errors import (
    GcpApiError,
    GcpAuthError,
    GcpConflictError,
    GcpNotFoundError,
    GcpPermissionDeniedError,
)
from ..client.poller import (
    PollProgress,
    operation_done,
    poll_until_terminal,
    state_in,
    wait_for_operation,
)
from ..credentials import CredentialUnavailable
from ..errors import (
    ErrorKind,
    InstallationAborted,
    InstallerError,
    OperationFailedError,
    OperationTimeoutError,
)
from ..iam import (
    PolicyMergeEngine,
    RoleBinding,
    function_scope,
    project_scope,
    service_account_member,
)
from ..prerequisites import PrerequisitesGate
from ..settings import InstallConfig, InstallerSettings
from .functions import DEVICE_AUTH, TVM, FunctionSourceProvider
from .naming import SERVICE_ACCOUNTS, ResourceNames, email_value_key
from .openapi import build_openapi_document, encode_openapi_document
from .steps import Resources, Step, StepContext, StepResult

logger = logging.getLogger(__name__)

T = TypeVar('T')

RESOURCE_MANAGER = 'https://cloudresourcemanager.googleapis.com/v1'
BILLING = 'https://cloudbilling.googleapis.com/v1'
SERVICE_USAGE = 'https://serviceusage.googleapis.com/v1'
SERVICE_MANAGEMENT = 'https://servicemanagement.googleapis.com/v1'
IAM = 'https://iam.googleapis.com/v1'
FIREBASE = 'https://firebase.googleapis.com/v1beta1'
FIRESTORE = 'https://firestore.googleapis.com/v1'
FUNCTIONS = 'https://cloudfunctions.googleapis.com/v2'
API_GATEWAY = 'https://apigateway.googleapis.com/v1'
API_KEYS = 'https://apikeys.googleapis.com/v2'

STEP_PREREQUISITES = 'Checking prerequisites'
STEP_VALIDATE = 'Validating project'
STEP_ENABLE_APIS = 'Enabling APIs'
STEP_SERVICE_ACCOUNTS = 'Creating service accounts'
STEP_FIREBASE = 'Setting up Firebase'
STEP_FUNCTIONS = 'Deploying Cloud Functions'
STEP_WORKLOAD_IDENTITY = 'Configuring Workload Identity'
STEP_API_GATEWAY = 'Creating API Gateway'
STEP_API_KEYS = 'Generating API keys'

# Project-level roles per service account.
PROJECT_ROLES: dict[str, tuple[str, ...]] = {
    'vertex-ai-sa': (
        'roles/aiplatform.user',
        'roles/storage.objectAdmin',
        'roles/datastore.user',
        'roles/iam.workloadIdentityUser',
        'roles/logging.logWriter',
    ),
    'device-auth-sa': (
        'roles/cloudfunctions.invoker',
        'roles/firebaseauth.admin',
        'roles/logging.logWriter',
        'roles/iam.serviceAccountTokenCreator',
    ),
    'tvm-sa': (
        'roles/cloudfunctions.invoker',
        'roles/iam.serviceAccountTokenCreator',
        'roles/logging.logWriter',
    ),
    'apigw-invoker-sa': ('roles/logging.logWriter',),
}

GATEWAY_AGENT_ROLES = (
    'roles/servicemanagement.serviceController',
    'roles/servicemanagement.configEditor',
)

FUNCTION_REQUIREMENTS = 'functions-framework>=3.1.0\nfirebase-admin>=6.1.0\nrequests>=2.28.0\n'

# Errors no warning-and-continue path may absorb.
_UNRECOVERABLE = (GcpAuthError, CredentialUnavailable, InstallationAborted)


def _restore_kind(kind: str) -> Callable[[Resources], dict[str, Any]]:
    def _restore(resources: Resources) -> dict[str, Any]:
        return dict(resources.get(kind, {}))

    return _restore


def _is_operation(payload: dict[str, Any]) -> bool:
    name = payload.get('name') or ''
    return 'operations/' in name


class GcpProvisioningSteps:
    """The ordered step catalogue for one installation target."""

    def __init__(
        self,
        client: Any,
        config: InstallConfig,
        settings: InstallerSettings,
        *,
        function_sources: FunctionSourceProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._config = config
        self._settings = settings
        self._names = ResourceNames.for_config(config)
        self._iam = PolicyMergeEngine(client)
        self._gate = PrerequisitesGate(client)
        self._function_sources = function_sources
        self._clock = clock

    @property
    def names(self) -> ResourceNames:
        return self._names

    def steps(self) -> list[Step]:
        critical = set(self._settings.version_critical_steps)
        catalogue = [
            (STEP_PREREQUISITES, 5, self.check_prerequisites, None),
            (STEP_VALIDATE, 5, self.validate_project, 'project'),
            (STEP_ENABLE_APIS, 10, self.enable_apis, 'apis'),
            (STEP_SERVICE_ACCOUNTS, 15, self.create_service_accounts, 'service_accounts'),
            (STEP_FIREBASE, 10, self.setup_firebase, 'firebase'),
            (STEP_FUNCTIONS, 20, self.deploy_functions, 'cloud_functions'),
            (STEP_WORKLOAD_IDENTITY, 15, self.setup_workload_identity, 'workload_identity'),
            (STEP_API_GATEWAY, 15, self.create_api_gateway, 'api_gateway'),
            (STEP_API_KEYS, 5, self.generate_api_key, 'api_key'),
        ]
        return [
            Step(
                name=name,
                weight=weight,
                action=action,
                restore=_restore_kind(kind) if kind else None,
                version_critical=name in critical,
            )
            for name, weight, action, kind in catalogue
        ]

    # ── Shared helpers ───────────────────────────────────────────

    @property
    def _project(self) -> str:
        return self._config.project_id

    def _project_number(self, ctx: StepContext) -> str | None:
        return ctx.values.get('project_number') or self._config.project_number

    def _poll_reporter(
        self,
        ctx: StepContext,
        label: str,
        start: float,
        end: float,
    ) -> Callable[[PollProgress], None]:
        def _report(progress: PollProgress) -> None:
            fraction = start + (end - start) * (progress.check / progress.max_checks)
            ctx.report(f'{label} ({progress.label})', fraction)

        return _report

    async def _wait_for(self, ctx: StepContext, base_url: str, operation: dict[str, Any]) -> dict[str, Any]:
        if not _is_operation(operation) or operation.get('done'):
            operation_done(operation)
            return operation
        return await wait_for_operation(
            self._client,
            f"{base_url}/{operation['name']}",
            self._settings.operation_poll,
            abort=ctx.abort,
        )

    async def _retry_on_propagation(
        self,
        ctx: StepContext,
        description: str,
        action: Callable[[], Awaitable[T]],
        *,
        also_retry: tuple[type[GcpApiError], ...] = (),
    ) -> T:
        """Retry ``action`` while a fresh grant or service has not propagated."""
        attempts = self._settings.propagation_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await action()
            except (GcpPermissionDeniedError, *also_retry) as exc:
                propagating = (
                    not isinstance(exc, GcpPermissionDeniedError) or exc.not_yet_propagated
                )
                if not propagating:
                    raise
                if attempt >= attempts:
                    raise InstallerError(
                        f'{description}: permission still not effective after '
                        f'{attempts} attempts ({exc.message})',
                    ) from exc
                logger.info(
                    '%s not yet effective, waiting %.0fs (attempt %d/%d)',
                    description,
                    self._settings.propagation_retry_delay_seconds,
                    attempt,
                    attempts,
                    extra={'kind': ErrorKind.PERMISSION_NOT_YET_PROPAGATED.value},
                )
                await ctx.sleep(self._settings.propagation_retry_delay_seconds)
        raise AssertionError('unreachable')

    # ── 1. Prerequisites ─────────────────────────────────────────

    async def check_prerequisites(self, ctx: StepContext) -> StepResult:
        result = await self._gate.evaluate(self._project)
        result.raise_for_blocked()
        return StepResult(values={'prerequisites_checked': True})

    # ── 2. Project validation ────────────────────────────────────

    async def validate_project(self, ctx: StepContext) -> StepResult:
        project = await self._client.get(f'{RESOURCE_MANAGER}/projects/{self._project}')
        state = project.get('lifecycleState')
        if state != 'ACTIVE':
            raise InstallerError(f'Project {self._project} is not active (state: {state})')
        project_number = str(project.get('projectNumber') or '') or None

        warnings: list[str] = []
        ctx.report('Checking billing status', 0.5)
        try:
            billing = await self._client.get(f'{BILLING}/projects/{self._project}/billingInfo')
        except GcpPermissionDeniedError:
            warnings.append('Unable to verify billing status (permission denied)')
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            warnings.append(f'Unable to verify billing status: {exc.message}')
        else:
            if not billing.get('billingEnabled'):
                raise InstallerError(
                    f'Billing is not enabled for project {self._project}. Link a billing '
                    'account at https://console.cloud.google.com/billing/linkedaccount'
                    f'?project={self._project} and run the installer again.'
                )

        values = {'project_validated': True, 'project_number': project_number}
        return StepResult(values=values, resources={'project': values}, warnings=warnings)

    # ── 3. API enablement ────────────────────────────────────────

    async def enable_apis(self, ctx: StepContext) -> StepResult:
        apis = list(self._settings.enable_apis)
        outcomes = await asyncio.gather(
            *(
                self._client.post(f'{SERVICE_USAGE}/projects/{self._project}/services/{api}:enable')
                for api in apis
            ),
            return_exceptions=True,
        )
        failed: list[str] = []
        for api, outcome in zip(apis, outcomes):
            if isinstance(outcome, _UNRECOVERABLE):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning('Failed to enable %s: %s', api, outcome, extra={'api': api})
                failed.append(api)

        await ctx.sleep(
            self._settings.api_enable_settle_seconds,
            'Waiting for APIs to finish enabling',
        )

        # Listing gateway APIs makes the API Gateway service agent exist.
        ctx.report('Ensuring API Gateway service agent exists', 0.8)
        try:
            await self._client.get(f'{API_GATEWAY}/projects/{self._project}/locations/global/apis')
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            logger.debug('Service agent trigger returned %s', exc.status_code)
        await ctx.sleep(self._settings.service_agent_settle_seconds)

        values = {'apis_enabled': True, 'apis_failed': failed}
        warnings = [f"Could not enable: {', '.join(failed)}"] if failed else []
        return StepResult(values=values, resources={'apis': values}, warnings=warnings)

    # ── 4. Service accounts ──────────────────────────────────────

    async def _ensure_service_account(self, sa_id: str, display_name: str) -> str:
        email = self._names.service_account_email(sa_id)
        base = f'{IAM}/projects/{self._project}/serviceAccounts'
        if await self._client.get_or_none(f'{base}/{email}') is not None:
            logger.info('Service account %s already exists', email)
            return email
        try:
            await self._client.post(
                base,
                {
                    'accountId': self._names.account_id(sa_id),
                    'serviceAccount': {'displayName': display_name},
                },
            )
            logger.info('Created service account %s', email)
        except GcpConflictError:
            logger.info('Service account %s already exists', email)
        return email

    async def create_service_accounts(self, ctx: StepContext) -> StepResult:
        emails: dict[str, str] = {}
        for index, (sa_id, display_name) in enumerate(SERVICE_ACCOUNTS):
            ctx.report(f'Creating service account {self._names.account_id(sa_id)}', index / 8)
            emails[sa_id] = await self._ensure_service_account(sa_id, display_name)

        ctx.report('Granting project roles', 0.5)
        bindings = [
            RoleBinding(role, service_account_member(emails[sa_id]))
            for sa_id, roles in PROJECT_ROLES.items()
            for role in roles
        ]
        await self._retry_on_propagation(
            ctx,
            'Granting project roles',
            lambda: self._iam.bulk_apply(project_scope(self._project), bindings),
        )
        await ctx.sleep(self._settings.iam_propagation_seconds)

        ctx.report('Allowing token vending to impersonate the Vertex AI identity', 0.8)
        await self._retry_on_propagation(
            ctx,
            'Granting token creator',
            lambda: self._iam.grant_token_creator(
                self._project, emails['vertex-ai-sa'], emails['tvm-sa'],
            ),
            also_retry=(GcpNotFoundError,),
        )

        values = {email_value_key(sa_id): email for sa_id, email in emails.items()}
        return StepResult(values=values, resources={'service_accounts': values})

    # ── 5. Firebase ──────────────────────────────────────────────

    async def _ensure_firestore(self, ctx: StepContext) -> None:
        databases = f'{FIRESTORE}/projects/{self._project}/databases'
        if await self._client.get_or_none(f'{databases}/(default)') is not None:
            return
        try:
            operation = await self._client.post(
                databases,
                {'locationId': self._config.region, 'type': 'FIRESTORE_NATIVE'},
                params={'databaseId': '(default)'},
            )
        except GcpConflictError:
            return
        await self._wait_for(ctx, FIRESTORE, operation)

    async def _web_api_key(self, ctx: StepContext) -> tuple[str, str]:
        web_apps = f'{FIREBASE}/projects/{self._project}/webApps'
        apps = (await self._client.get(web_apps)).get('apps') or []
        if not apps:
            operation = await self._client.post(
                web_apps, {'displayName': f'{self._config.solution_prefix} Web App'},
            )
            await self._wait_for(ctx, FIREBASE, operation)
            apps = (await self._client.get(web_apps)).get('apps') or []
        if not apps:
            raise InstallerError('Firebase web app was not created')
        app_id = apps[0]['appId']
        config = await self._client.get(f'{web_apps}/{app_id}/config')
        return app_id, config.get('apiKey', '')

    async def setup_firebase(self, ctx: StepContext) -> StepResult:
        project = await self._client.get_or_none(f'{FIREBASE}/projects/{self._project}')
        if not project or not project.get('projectId'):
            ctx.report('Adding Firebase to the project', 0.1)
            operation = await self._client.post(f'{FIREBASE}/projects/{self._project}:addFirebase')
            await self._wait_for(ctx, FIREBASE, operation)
            await ctx.sleep(self._settings.firebase_settle_seconds, 'Waiting for Firebase to be ready')

        ctx.report('Ensuring Firestore database', 0.4)
        await self._ensure_firestore(ctx)

        ctx.report('Reading Firebase web app configuration', 0.7)
        warnings: list[str] = []
        app_id, web_api_key = '', ''
        try:
            app_id, web_api_key = await self._web_api_key(ctx)
        except _UNRECOVERABLE:
            raise
        except (GcpApiError, InstallerError) as exc:
            warnings.append(f'Could not read Firebase web API key: {exc}')

        values = {
            'firebase_enabled': True,
            'firestore_database': '(default)',
            'firebase_app_id': app_id,
            'firebase_web_api_key': web_api_key,
        }
        return StepResult(values=values, resources={'firebase': values}, warnings=warnings)

    # ── 6. Cloud Functions ───────────────────────────────────────

    def _function_body(self, ctx: StepContext, kind: str) -> dict[str, Any]:
        if self._function_sources is None:
            raise InstallerError('no function source provider configured')
        files = self._function_sources.files(kind)
        files.setdefault('requirements.txt', FUNCTION_REQUIREMENTS)

        if kind == DEVICE_AUTH:
            entry_point, sa_id, env = 'device_authenticator', 'device-auth-sa', {}
        else:
            entry_point, sa_id = 'token_vendor_machine', 'tvm-sa'
            env = {
                'WIF_PROJECT_NUMBER': self._project_number(ctx) or '',
                'WIF_POOL_ID': self._names.pool_id,
                'WIF_PROVIDER_ID': self._names.provider_id,
                'TARGET_SERVICE_ACCOUNT_EMAIL': self._names.service_account_email('vertex-ai-sa'),
            }

        name = self._names.function_name(kind)
        return {
            'name': f'projects/{self._project}/locations/{self._config.region}/functions/{name}',
            'description': f'{name} function',
            'buildConfig': {
                'runtime': 'python311',
                'entryPoint': entry_point,
                'source': {'inlineSource': {'files': files}},
            },
            'serviceConfig': {
                'serviceAccountEmail': self._names.service_account_email(sa_id),
                'maxInstanceCount': 5,
                'availableMemory': '256Mi',
                'timeoutSeconds': 60,
                'environmentVariables': env,
                'ingressSettings': 'ALLOW_INTERNAL_ONLY',
            },
        }

    async def _deploy_function(self, ctx: StepContext, kind: str) -> tuple[str, list[str]]:
        name = self._names.function_name(kind)
        base = f'{FUNCTIONS}/projects/{self._project}/locations/{self._config.region}/functions'
        existing = await self._client.get_or_none(f'{base}/{name}')
        if existing is not None:
            logger.info('Function %s already exists', name)
            return (existing.get('serviceConfig') or {}).get('uri') or self._names.function_url(kind), []

        operation = await self._client.post(
            base, self._function_body(ctx, kind), params={'functionId': name},
        )
        await self._wait_for(ctx, FUNCTIONS, operation)
        deployed = await self._client.get(f'{base}/{name}')
        uri = (deployed.get('serviceConfig') or {}).get('uri') or self._names.function_url(kind)

        warnings: list[str] = []
        invoker = service_account_member(self._names.service_account_email('apigw-invoker-sa'))
        try:
            await self._iam.grant_role(
                function_scope(self._project, self._config.region, name),
                'roles/cloudfunctions.invoker',
                invoker,
            )
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            warnings.append(f'Could not grant gateway invoker on {name}: {exc.message}')
        return uri, warnings

    async def deploy_functions(self, ctx: StepContext) -> StepResult:
        values: dict[str, Any] = {}
        warnings: list[str] = []
        failed: list[str] = []
        for index, kind in enumerate((DEVICE_AUTH, TVM)):
            name = self._names.function_name(kind)
            ctx.report(f'Deploying function {name}', index / 2)
            key = f"{kind.replace('-', '_')}_url"
            try:
                values[key], grant_warnings = await self._deploy_function(ctx, kind)
                warnings.extend(grant_warnings)
            except _UNRECOVERABLE:
                raise
            except (GcpApiError, OperationFailedError, OperationTimeoutError) as exc:
                logger.error('Failed to deploy function %s: %s', name, exc)
                values[key] = self._names.function_url(kind)
                failed.append(name)
                warnings.append(f'Function {name} failed to deploy: {exc}')

        if failed:
            result = StepResult.degraded(
                warnings[0], values=values, resources={'cloud_functions': values},
            )
            result.warnings.extend(warnings[1:])
            return result
        return StepResult(values=values, resources={'cloud_functions': values}, warnings=warnings)

    # ── 7. Workload Identity ─────────────────────────────────────

    async def setup_workload_identity(self, ctx: StepContext) -> StepResult:
        pools = f'{IAM}/projects/{self._project}/locations/global/workloadIdentityPools'
        pool_id, provider_id = self._names.pool_id, self._names.provider_id

        try:
            operation = await self._client.post(
                pools,
                {'displayName': f'{self._config.solution_prefix} Device Pool'},
                params={'workloadIdentityPoolId': pool_id},
            )
            await self._wait_for(ctx, IAM, operation)
        except GcpConflictError:
            logger.info('Workload identity pool %s already exists', pool_id)

        ctx.report('Creating identity provider', 0.5)
        try:
            operation = await self._client.post(
                f'{pools}/{pool_id}/providers',
                {
                    'displayName': f'{self._config.solution_prefix} Firebase Provider',
                    'oidc': {
                        'issuerUri': f'https://securetoken.google.com/{self._project}',
                        'allowedAudiences': [self._project],
                    },
                    'attributeMapping': {
                        'google.subject': 'assertion.sub',
                        'attribute.aud': 'assertion.aud',
                    },
                },
                params={'workloadIdentityPoolProviderId': provider_id},
            )
            await self._wait_for(ctx, IAM, operation)
        except GcpConflictError:
            logger.info('Workload identity provider %s already exists', provider_id)

        values = {
            'workload_identity_configured': True,
            'workload_identity_pool_id': pool_id,
            'workload_identity_provider_id': provider_id,
        }
        return StepResult(values=values, resources={'workload_identity': values})

    # ── 8. API Gateway ───────────────────────────────────────────

    async def _grant_gateway_agent(self, ctx: StepContext) -> list[str]:
        project_number = self._project_number(ctx)
        if not project_number:
            return ['Project number unknown; API Gateway service agent roles not granted']
        member = service_account_member(ResourceNames.gateway_service_agent(project_number))
        try:
            await self._iam.bulk_apply(
                project_scope(self._project),
                [RoleBinding(role, member) for role in GATEWAY_AGENT_ROLES],
            )
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            return [f'Could not grant API Gateway service agent roles: {exc.message}']
        await ctx.sleep(self._settings.iam_propagation_seconds)
        return []

    async def _ensure_gateway_api(self, ctx: StepContext) -> dict[str, Any]:
        api_url = f'{API_GATEWAY}/projects/{self._project}/locations/global/apis'
        api_id = self._names.api_id

        api = await self._retry_on_propagation(
            ctx, 'Reading gateway API', lambda: self._client.get_or_none(f'{api_url}/{api_id}'),
        )
        if api is None:
            async def _create() -> None:
                try:
                    operation = await self._client.post(
                        api_url,
                        {'displayName': f'{self._config.solution_prefix} Device API'},
                        params={'apiId': api_id},
                    )
                except GcpConflictError:
                    return
                await self._wait_for(ctx, API_GATEWAY, operation)

            await self._retry_on_propagation(ctx, 'Creating gateway API', _create)
            api = await self._client.get(f'{api_url}/{api_id}')
        return api

    async def _publish_service_config(self, ctx: StepContext, managed_service: str, document: str) -> list[str]:
        try:
            operation = await self._client.post(
                f'{SERVICE_MANAGEMENT}/services/{managed_service}/configs:submit',
                {
                    'configSource': {
                        'files': [
                            {
                                'filePath': 'openapi.json',
                                'fileContents': document,
                                'fileType': 'OPEN_API_JSON',
                            }
                        ]
                    }
                },
            )
            await self._wait_for(ctx, SERVICE_MANAGEMENT, operation)
            await ctx.sleep(self._settings.managed_service_settle_seconds)
            await self._client.post(
                f'{SERVICE_USAGE}/projects/{self._project}/services/{managed_service}:enable'
            )
            await ctx.sleep(self._settings.managed_service_settle_seconds)
        except _UNRECOVERABLE:
            raise
        except (GcpApiError, OperationFailedError, OperationTimeoutError) as exc:
            logger.warning('Could not publish managed service %s: %s', managed_service, exc)
            return [f'Managed service {managed_service} not published: {exc}']
        return []

    async def create_api_gateway(self, ctx: StepContext) -> StepResult:
        names = self._names
        project_number = self._project_number(ctx)
        expected_url = f'https://{names.expected_gateway_hostname(project_number)}'
        warnings: list[str] = []

        await ctx.sleep(
            self._settings.gateway_service_settle_seconds,
            'Waiting for API Gateway service to initialize',
        )
        ctx.report('Granting API Gateway service agent roles', 0.05)
        warnings.extend(await self._grant_gateway_agent(ctx))

        try:
            service = await self._client.get(
                f'{SERVICE_USAGE}/projects/{self._project}/services/apigateway.googleapis.com'
            )
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            raise InstallerError(
                f'API Gateway API is not enabled; enable apigateway.googleapis.com ({exc.message})'
            ) from exc
        if service.get('state') not in (None, 'ENABLED'):
            raise InstallerError('API Gateway API is not enabled; enable apigateway.googleapis.com')

        ctx.report('Creating gateway API', 0.1)
        api = await self._ensure_gateway_api(ctx)
        managed_service = api.get('managedService')
        if not managed_service:
            managed_service = names.expected_managed_service
            warnings.append(f'Gateway API has no managed service yet; assuming {managed_service}')

        document = encode_openapi_document(
            build_openapi_document(
                names,
                managed_service,
                device_auth_url=ctx.values.get('device_auth_url'),
                tvm_url=ctx.values.get('tvm_url'),
            )
        )
        ctx.report('Deploying API Gateway service configuration', 0.15)
        warnings.extend(await self._publish_service_config(ctx, managed_service, document))

        config_id = f'{names.api_id}-config-{int(self._clock())}'
        config_name = f'projects/{self._project}/locations/global/apis/{names.api_id}/configs/{config_id}'
        values: dict[str, Any] = {
            'api_id': names.api_id,
            'api_config_id': config_id,
            'gateway_id': names.gateway_id,
            'managed_service': managed_service,
        }

        ctx.report('Creating API config', 0.2)
        try:
            await self._client.post(
                f'{API_GATEWAY}/projects/{self._project}/locations/global/apis/{names.api_id}/configs',
                {
                    'displayName': 'API Config',
                    'openapiDocuments': [{'document': {'path': 'openapi.json', 'contents': document}}],
                    'gatewayServiceAccount': names.service_account_email('apigw-invoker-sa'),
                },
                params={'apiConfigId': config_id},
            )
        except GcpPermissionDeniedError as exc:
            return StepResult.degraded(
                'API Gateway permissions not yet propagated; retry in a few minutes '
                f'({exc.message})',
                values={**values, 'api_gateway_url': expected_url},
                resources={'api_gateway': values},
            )

        activation = await poll_until_terminal(
            lambda: self._client.get(f'{API_GATEWAY}/{config_name}'),
            state_in('ACTIVE'),
            policy=self._settings.config_activation_poll,
            progress=self._poll_reporter(ctx, 'Creating API Gateway - waiting for activation', 0.2, 0.5),
            abort=ctx.abort,
        )
        if activation.timed_out:
            return StepResult.degraded(
                'API Gateway is still activating. It may take up to 15 minutes to become '
                'fully operational.',
                values={**values, 'api_gateway_url': expected_url},
                resources={'api_gateway': values},
            )
        ctx.report('Creating API Gateway - configuration activated', 0.5)

        region = names.gateway_region
        if region != self._config.region:
            warnings.append(
                f'API Gateway is not available in {self._config.region}; using {region}'
            )
        gateways = f'{API_GATEWAY}/projects/{self._project}/locations/{region}/gateways'
        gateway_url = f'{gateways}/{names.gateway_id}'
        values['gateway_region'] = region

        exists = await self._client.get_or_none(gateway_url) is not None
        if not exists:
            try:
                await self._client.post(
                    gateways,
                    {'apiConfig': config_name, 'displayName': f'{self._config.solution_prefix} Gateway'},
                    params={'gatewayId': names.gateway_id},
                )
            except GcpConflictError:
                exists = True
        if exists:
            await self._client.patch(
                gateway_url, {'apiConfig': config_name}, params={'updateMask': 'apiConfig'},
            )

        ready = await poll_until_terminal(
            lambda: self._client.get(gateway_url),
            state_in('ACTIVE', require=('defaultHostname',)),
            policy=self._settings.gateway_ready_poll,
            progress=self._poll_reporter(ctx, 'Waiting for gateway deployment', 0.55, 1.0),
            abort=ctx.abort,
        )
        if ready.timed_out:
            return StepResult.degraded(
                f'Gateway {names.gateway_id} is still deploying; expected at {expected_url}',
                values={**values, 'api_gateway_url': expected_url},
                resources={'api_gateway': values},
            )

        values['api_gateway_url'] = f"https://{ready.payload['defaultHostname']}"
        return StepResult(values=values, resources={'api_gateway': values}, warnings=warnings)

    # ── 9. API keys ──────────────────────────────────────────────

    async def _settle_before_key(self, ctx: StepContext) -> None:
        total = self._settings.api_key_settle_seconds
        waited = 0.0
        while waited < total:
            chunk = min(10.0, total - waited)
            await ctx.sleep(chunk)
            waited += chunk
            ctx.report(
                f'Waiting for API Gateway... ({int(waited)}s/{int(total)}s)',
                0.4 * waited / total,
            )

    async def _ensure_managed_service_enabled(self, ctx: StepContext, managed_service: str) -> list[str]:
        service_url = f'{SERVICE_USAGE}/projects/{self._project}/services/{managed_service}'
        try:
            status = await self._client.get_or_none(service_url)
            if status is not None and status.get('state') == 'ENABLED':
                return []
            ctx.report('Enabling API Gateway managed service', 0.1)
            await self._client.post(f'{service_url}:enable')
            await ctx.sleep(self._settings.managed_service_settle_seconds)
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            return [f'Could not enable managed service {managed_service}: {exc.message}']
        return []

    async def _lookup_managed_service(self, ctx: StepContext) -> str:
        api_url = f'{API_GATEWAY}/projects/{self._project}/locations/global/apis/{self._names.api_id}'
        attempts = self._settings.managed_service_lookup_attempts
        for attempt in range(1, attempts + 1):
            ctx.report(f'Retrieving API Gateway details (attempt {attempt}/{attempts})', 0.45)
            try:
                api = await self._client.get(api_url)
            except _UNRECOVERABLE:
                raise
            except GcpApiError as exc:
                logger.warning('Could not read gateway API: %s', exc.message)
            else:
                if api.get('managedService'):
                    return api['managedService']
            if attempt < attempts:
                await ctx.sleep(self._settings.managed_service_lookup_delay_seconds)
        return ''

    async def _read_key_string(self, key_name: str) -> str:
        return (await self._client.get(f'{API_KEYS}/{key_name}/keyString')).get('keyString', '')

    async def _existing_key(self, ctx: StepContext, force: bool) -> dict[str, Any] | None:
        keys_url = f'{API_KEYS}/projects/{self._project}/locations/global/keys'
        try:
            listing = await self._client.get(keys_url)
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            logger.warning('Could not list API keys: %s', exc.message)
            return None
        existing = next(
            (k for k in listing.get('keys') or [] if k.get('displayName') == self._names.key_display_name),
            None,
        )
        if existing is None or not force:
            return existing

        logger.info('Deleting API key %s for regeneration', existing['name'])
        try:
            await self._client.call(f"{API_KEYS}/{existing['name']}", 'DELETE')
            await ctx.sleep(self._settings.iam_propagation_seconds)
        except _UNRECOVERABLE:
            raise
        except GcpApiError as exc:
            logger.warning('Could not delete API key %s: %s', existing['name'], exc.message)
        return None

    async def _key_from_operation(self, ctx: StepContext, operation: dict[str, Any]) -> tuple[str, str] | None:
        if operation.get('keyString'):
            return operation['keyString'], operation.get('name', '')
        if not _is_operation(operation):
            return None

        result = await poll_until_terminal(
            lambda: self._client.get(f"{API_KEYS}/{operation['name']}"),
            operation_done,
            policy=self._settings.api_key_poll,
            progress=self._poll_reporter(ctx, 'Creating API key', 0.6, 0.95),
            abort=ctx.abort,
        )
        if result.timed_out:
            return None
        response = (result.payload or {}).get('response') or {}
        key_name = response.get('name') or operation['name']
        key_string = response.get('keyString') or (response.get('current') or {}).get('keyString')
        if not key_string and response.get('name'):
            key_string = await self._read_key_string(response['name'])
        if not key_string:
            raise InstallerError('API key creation completed but keyString not found in response')
        return key_string, key_name

    def _manual_key_instructions(self, managed_service: str) -> str:
        console = 'https://console.cloud.google.com/apis/credentials'
        restriction = managed_service or self._names.expected_managed_service
        return (
            'API key creation did not finish; the API Gateway is probably still initializing. '
            f'Retry in 5-10 minutes, or create the key at {console}?project={self._project} '
            f'and restrict it to {restriction}.'
        )

    async def generate_api_key(self, ctx: StepContext, *, force: bool = False) -> StepResult:
        warnings: list[str] = []
        if force:
            api = await self._client.get_or_none(
                f'{API_GATEWAY}/projects/{self._project}/locations/global/apis/{self._names.api_id}'
            )
            if api and api.get('managedService'):
                warnings.extend(await self._ensure_managed_service_enabled(ctx, api['managedService']))
        else:
            await self._settle_before_key(ctx)

        managed_service = await self._lookup_managed_service(ctx)
        if not managed_service:
            warnings.append('Managed service name unknown; creating an unrestricted API key')

        existing = await self._existing_key(ctx, force)
        if existing is not None:
            key_string = await self._read_key_string(existing['name'])
            if key_string:
                values = {'api_key': key_string, 'api_key_id': existing['name']}
                return StepResult(values=values, resources={'api_key': values}, warnings=warnings)

        body: dict[str, Any] = {'displayName': self._names.key_display_name}
        if managed_service:
            body['restrictions'] = {'apiTargets': [{'service': managed_service}]}

        ctx.report('Creating API key', 0.6)
        try:
            operation = await self._client.post(
                f'{API_KEYS}/projects/{self._project}/locations/global/keys', body,
            )
            created = await self._key_from_operation(ctx, operation)
        except _UNRECOVERABLE:
            raise
        except (GcpApiError, OperationFailedError, InstallerError) as exc:
            logger.error('Failed to create API key: %s', exc)
            return StepResult.degraded(
                f'API key creation failed: {exc}. {self._manual_key_instructions(managed_service)}',
                values={'api_key': ''},
            )
        if created is None:
            return StepResult.degraded(
                self._manual_key_instructions(managed_service), values={'api_key': ''},
            )

        key_string, key_name = created
        values = {'api_key': key_string, 'api_key_id': key_name}
        ctx.report('API key created', 1.0)
        return StepResult(values=values, resources={'api_key': values}, warnings=warnings)
