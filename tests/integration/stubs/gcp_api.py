"""In-process fake of the Google Cloud control-plane REST APIs.

Implements just enough of Resource Manager, Billing, Service Usage, IAM,
Firebase, Firestore, Identity Toolkit, Cloud Functions, API Gateway,
Service Management and API Keys for a full installation to run. Served
through ``httpx.MockTransport`` so no sockets are opened.

Usage::

    api = FakeGcpApi(project_id='demo-1')
    http = httpx.AsyncClient(transport=api.transport())

Error injection:
    ``fail(method, path_fragment, status, message, times=1)`` makes the next
    ``times`` matching requests fail with that status.
"""
from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Callable

import httpx

Handler = Callable[[httpx.Request, re.Match, dict], tuple[int, dict]]


@dataclass
class _Injected:
    method: str
    fragment: str
    status: int
    message: str
    remaining: int


@dataclass
class FakeGcpApi:
    project_id: str = 'demo-1'
    project_number: str = '123456789'
    lifecycle_state: str = 'ACTIVE'
    billing_enabled: bool = True

    # Prerequisites (console-only conditions).
    firebase_enabled: bool = True
    storage_bucket: bool = True
    firestore_database: bool = True
    auth_initialized: bool = True
    email_password_enabled: bool = True
    test_user: bool = True

    # Readiness behaviour.
    operation_checks_until_done: int = 1
    config_checks_until_active: int = 1
    gateway_checks_until_active: int = 1
    api_key_checks_until_done: int = 1

    enabled_services: set[str] = field(default_factory=set)
    service_accounts: dict[str, dict] = field(default_factory=dict)
    iam_policies: dict[str, dict] = field(default_factory=dict)
    web_apps: list[dict] = field(default_factory=list)
    functions: dict[str, dict] = field(default_factory=dict)
    pools: dict[str, dict] = field(default_factory=dict)
    providers: dict[str, dict] = field(default_factory=dict)
    apis: dict[str, dict] = field(default_factory=dict)
    api_configs: dict[str, dict] = field(default_factory=dict)
    gateways: dict[str, dict] = field(default_factory=dict)
    service_configs: list[dict] = field(default_factory=list)
    api_keys: dict[str, dict] = field(default_factory=dict)
    operations: dict[str, dict] = field(default_factory=dict)
    request_log: list[tuple[str, str]] = field(default_factory=list)

    _injected: list[_Injected] = field(default_factory=list)
    _checks: dict[str, int] = field(default_factory=dict)
    _counter: int = 0

    def __post_init__(self) -> None:
        p = re.escape(self.project_id)
        self._routes: list[tuple[str, str, re.Pattern, Handler]] = [
            # Resource Manager / Billing
            ('POST', 'cloudresourcemanager', re.compile(rf'^/v1/projects/{p}:getIamPolicy$'), self._get_policy),
            ('POST', 'cloudresourcemanager', re.compile(rf'^/v1/projects/{p}:setIamPolicy$'), self._set_policy),
            ('GET', 'cloudresourcemanager', re.compile(rf'^/v1/projects/{p}$'), self._get_project),
            ('GET', 'cloudbilling', re.compile(rf'^/v1/projects/{p}/billingInfo$'), self._get_billing),
            # Service Usage
            ('POST', 'serviceusage', re.compile(rf'^/v1/projects/{p}/services/(?P<svc>[^/:]+):enable$'), self._enable_service),
            ('GET', 'serviceusage', re.compile(rf'^/v1/projects/{p}/services/(?P<svc>[^/:]+)$'), self._get_service),
            # Prerequisites
            ('GET', 'firebase', re.compile(rf'^/v1beta1/projects/{p}$'), self._get_firebase),
            ('GET', 'storage', re.compile(rf'^/storage/v1/b/{p}\.firebasestorage\.app$'), self._get_bucket),
            ('GET', 'firestore', re.compile(rf'^/v1/projects/{p}/databases/\(default\)$'), self._get_firestore),
            ('GET', 'identitytoolkit', re.compile(rf'^/v2/projects/{p}/config$'), self._get_auth_config),
            ('POST', 'identitytoolkit', re.compile(rf'^/v1/projects/{p}/accounts:query$'), self._query_users),
            # IAM
            ('POST', 'iam', re.compile(rf'^/v1/projects/{p}/serviceAccounts/(?P<email>[^/:]+):getIamPolicy$'), self._get_policy),
            ('POST', 'iam', re.compile(rf'^/v1/projects/{p}/serviceAccounts/(?P<email>[^/:]+):setIamPolicy$'), self._set_policy),
            ('GET', 'iam', re.compile(rf'^/v1/projects/{p}/serviceAccounts/(?P<email>[^/:]+)$'), self._get_service_account),
            ('POST', 'iam', re.compile(rf'^/v1/projects/{p}/serviceAccounts$'), self._create_service_account),
            ('POST', 'iam', re.compile(rf'^/v1/projects/{p}/locations/global/workloadIdentityPools$'), self._create_pool),
            ('POST', 'iam', re.compile(rf'^/v1/projects/{p}/locations/global/workloadIdentityPools/(?P<pool>[^/]+)/providers$'), self._create_provider),
            # Firebase web apps
            ('GET', 'firebase', re.compile(rf'^/v1beta1/projects/{p}/webApps$'), self._list_web_apps),
            ('POST', 'firebase', re.compile(rf'^/v1beta1/projects/{p}/webApps$'), self._create_web_app),
            ('GET', 'firebase', re.compile(rf'^/v1beta1/projects/{p}/webApps/(?P<app>[^/]+)/config$'), self._web_app_config),
            # Cloud Functions
            ('GET', 'cloudfunctions', re.compile(r'^/v2/projects/[^/]+/locations/[^/]+/functions/(?P<fn>[^/:]+):getIamPolicy$'), self._get_policy),
            ('POST', 'cloudfunctions', re.compile(r'^/v2/projects/[^/]+/locations/[^/]+/functions/(?P<fn>[^/:]+):setIamPolicy$'), self._set_policy),
            ('GET', 'cloudfunctions', re.compile(r'^/v2/projects/[^/]+/locations/[^/]+/functions/(?P<fn>[^/:]+)$'), self._get_function),
            ('POST', 'cloudfunctions', re.compile(r'^/v2/projects/[^/]+/locations/(?P<region>[^/]+)/functions$'), self._create_function),
            # API Gateway
            ('GET', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/global/apis$'), self._list_apis),
            ('POST', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/global/apis$'), self._create_api),
            ('GET', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/global/apis/(?P<api>[^/]+)$'), self._get_api),
            ('POST', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/global/apis/(?P<api>[^/]+)/configs$'), self._create_config),
            ('GET', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/global/apis/(?P<api>[^/]+)/configs/(?P<cfg>[^/]+)$'), self._get_config),
            ('GET', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/(?P<region>[^/]+)/gateways/(?P<gw>[^/]+)$'), self._get_gateway),
            ('POST', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/(?P<region>[^/]+)/gateways$'), self._create_gateway),
            ('PATCH', 'apigateway', re.compile(rf'^/v1/projects/{p}/locations/(?P<region>[^/]+)/gateways/(?P<gw>[^/]+)$'), self._patch_gateway),
            # Service Management
            ('POST', 'servicemanagement', re.compile(r'^/v1/services/(?P<svc>[^/]+)/configs:submit$'), self._submit_service_config),
            # API Keys
            ('GET', 'apikeys', re.compile(rf'^/v2/projects/{p}/locations/global/keys$'), self._list_keys),
            ('POST', 'apikeys', re.compile(rf'^/v2/projects/{p}/locations/global/keys$'), self._create_key),
            ('GET', 'apikeys', re.compile(r'^/v2/projects/[^/]+/locations/global/keys/(?P<key>[^/]+)/keyString$'), self._key_string),
            ('DELETE', 'apikeys', re.compile(r'^/v2/projects/[^/]+/locations/global/keys/(?P<key>[^/]+)$'), self._delete_key),
            # Operations (any service)
            ('GET', '', re.compile(r'^/v\w+/(?P<op>(?:.+/)?operations/.+)$'), self._get_operation),
        ]

    # ---- Transport ----

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def fail(self, method: str, fragment: str, status: int, message: str = 'injected error', times: int = 1) -> None:
        self._injected.append(_Injected(method, fragment, status, message, times))

    def calls(self, method: str, fragment: str) -> list[str]:
        return [path for m, path in self.request_log if m == method and fragment in path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        host = request.url.host.split('.')[0]
        path = request.url.path
        self.request_log.append((method, f'{host}{path}'))

        for injected in self._injected:
            if injected.remaining > 0 and injected.method == method and injected.fragment in path:
                injected.remaining -= 1
                return _error(injected.status, injected.message)

        body = json.loads(request.content) if request.content else {}
        for route_method, route_host, pattern, handler in self._routes:
            if route_method != method or (route_host and route_host != host):
                continue
            match = pattern.match(path)
            if match is None:
                continue
            status, payload = handler(request, match, body)
            return httpx.Response(status, json=payload)
        return _error(404, f'no fake route for {method} {host}{path}')

    # ---- Helpers ----

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f'{prefix}-{self._counter}'

    def _operation(self, base: str, response: dict | None = None, *, checks: int | None = None) -> tuple[int, dict]:
        name = f'{base}/operations/{self._next_id("op")}'.lstrip('/')
        checks = self.operation_checks_until_done if checks is None else checks
        operation = {'name': name, 'done': checks <= 0, 'response': response or {}}
        self.operations[name] = operation
        self._checks[name] = checks
        return 200, copy.deepcopy(operation)

    def _tick(self, key: str) -> bool:
        """Count a readiness check; True once the configured count is reached."""
        remaining = self._checks.get(key, 0) - 1
        self._checks[key] = remaining
        return remaining <= 0

    # ---- Resource Manager / Billing / Service Usage ----

    def _get_project(self, request, match, body):
        return 200, {
            'projectId': self.project_id,
            'projectNumber': self.project_number,
            'lifecycleState': self.lifecycle_state,
        }

    def _get_billing(self, request, match, body):
        return 200, {'billingEnabled': self.billing_enabled}

    def _enable_service(self, request, match, body):
        self.enabled_services.add(match['svc'])
        return self._operation(f'projects/{self.project_id}', checks=0)

    def _get_service(self, request, match, body):
        svc = match['svc']
        state = 'ENABLED' if svc in self.enabled_services else 'DISABLED'
        return 200, {'name': f'projects/{self.project_number}/services/{svc}', 'state': state}

    # ---- IAM policies ----

    def _policy_key(self, request: httpx.Request) -> str:
        return request.url.path.rsplit(':', 1)[0]

    def _get_policy(self, request, match, body):
        policy = self.iam_policies.setdefault(self._policy_key(request), {'etag': 'etag-0', 'bindings': []})
        return 200, copy.deepcopy(policy)

    def _set_policy(self, request, match, body):
        key = self._policy_key(request)
        current = self.iam_policies.get(key, {'etag': 'etag-0', 'bindings': []})
        policy = body.get('policy', {})
        if policy.get('etag') != current.get('etag'):
            return 409, {'error': {'code': 409, 'message': 'etag mismatch'}}
        stored = copy.deepcopy(policy)
        stored['etag'] = self._next_id('etag')
        self.iam_policies[key] = stored
        return 200, copy.deepcopy(stored)

    def members(self, resource_fragment: str, role: str) -> list[str]:
        for key, policy in self.iam_policies.items():
            if key.endswith(resource_fragment):
                return [
                    m
                    for b in policy.get('bindings', [])
                    if b['role'] == role
                    for m in b.get('members', [])
                ]
        return []

    # ---- Prerequisites ----

    def _exists(self, flag: bool, payload: dict) -> tuple[int, dict]:
        if not flag:
            return 404, {'error': {'code': 404, 'message': 'not found'}}
        return 200, payload

    def _get_firebase(self, request, match, body):
        return self._exists(self.firebase_enabled, {'projectId': self.project_id})

    def _get_bucket(self, request, match, body):
        return self._exists(self.storage_bucket, {'name': f'{self.project_id}.firebasestorage.app'})

    def _get_firestore(self, request, match, body):
        return self._exists(self.firestore_database, {'name': f'projects/{self.project_id}/databases/(default)'})

    def _get_auth_config(self, request, match, body):
        return self._exists(
            self.auth_initialized,
            {'signIn': {'email': {'enabled': self.email_password_enabled}}},
        )

    def _query_users(self, request, match, body):
        return 200, ({'userInfo': [{'localId': 'u-1'}]} if self.test_user else {})

    # ---- Service accounts and workload identity ----

    def _get_service_account(self, request, match, body):
        account = self.service_accounts.get(match['email'])
        if account is None:
            return 404, {'error': {'code': 404, 'message': 'service account not found'}}
        return 200, account

    def _create_service_account(self, request, match, body):
        email = f"{body['accountId']}@{self.project_id}.iam.gserviceaccount.com"
        if email in self.service_accounts:
            return 409, {'error': {'code': 409, 'message': 'already exists'}}
        self.service_accounts[email] = {'email': email, **body.get('serviceAccount', {})}
        return 200, self.service_accounts[email]

    def _create_pool(self, request, match, body):
        pool_id = request.url.params['workloadIdentityPoolId']
        if pool_id in self.pools:
            return 409, {'error': {'code': 409, 'message': 'pool already exists'}}
        self.pools[pool_id] = body
        return self._operation(f'projects/{self.project_number}/locations/global/workloadIdentityPools/{pool_id}', checks=0)

    def _create_provider(self, request, match, body):
        provider_id = request.url.params['workloadIdentityPoolProviderId']
        if provider_id in self.providers:
            return 409, {'error': {'code': 409, 'message': 'provider already exists'}}
        self.providers[provider_id] = body
        return self._operation(
            f"projects/{self.project_number}/locations/global/workloadIdentityPools/{match['pool']}/providers/{provider_id}",
            checks=0,
        )

    # ---- Firebase web apps ----

    def _list_web_apps(self, request, match, body):
        return 200, ({'apps': copy.deepcopy(self.web_apps)} if self.web_apps else {})

    def _create_web_app(self, request, match, body):
        self.web_apps.append({'appId': self._next_id('1:web'), 'displayName': body.get('displayName')})
        return self._operation('projects/-', checks=0)

    def _web_app_config(self, request, match, body):
        return 200, {'apiKey': 'AIzaFirebaseWebKey', 'projectId': self.project_id}

    # ---- Cloud Functions ----

    def _get_function(self, request, match, body):
        fn = self.functions.get(match['fn'])
        if fn is None:
            return 404, {'error': {'code': 404, 'message': 'function not found'}}
        return 200, fn

    def _create_function(self, request, match, body):
        name = request.url.params['functionId']
        self.functions[name] = {
            **body,
            'state': 'ACTIVE',
            'serviceConfig': {**body.get('serviceConfig', {}), 'uri': f'https://{name}-xyz.a.run.app'},
        }
        return self._operation(f"projects/{self.project_id}/locations/{match['region']}")

    # ---- API Gateway ----

    def _list_apis(self, request, match, body):
        return 200, ({'apis': list(self.apis.values())} if self.apis else {})

    def _create_api(self, request, match, body):
        api_id = request.url.params['apiId']
        if api_id in self.apis:
            return 409, {'error': {'code': 409, 'message': 'api already exists'}}
        self.apis[api_id] = {
            'name': f'projects/{self.project_id}/locations/global/apis/{api_id}',
            'managedService': f'{api_id}-0abc.apigateway.{self.project_id}.cloud.goog',
            'state': 'ACTIVE',
        }
        return self._operation(f'projects/{self.project_id}/locations/global')

    def _get_api(self, request, match, body):
        api = self.apis.get(match['api'])
        if api is None:
            return 404, {'error': {'code': 404, 'message': 'api not found'}}
        return 200, api

    def _create_config(self, request, match, body):
        config_id = request.url.params['apiConfigId']
        name = f"projects/{self.project_id}/locations/global/apis/{match['api']}/configs/{config_id}"
        self.api_configs[name] = {'name': name, 'state': 'CREATING', **body}
        self._checks[name] = self.config_checks_until_active
        return self._operation(f'projects/{self.project_id}/locations/global')

    def _get_config(self, request, match, body):
        name = f"projects/{self.project_id}/locations/global/apis/{match['api']}/configs/{match['cfg']}"
        config = self.api_configs.get(name)
        if config is None:
            return 404, {'error': {'code': 404, 'message': 'config not found'}}
        if self._tick(name):
            config['state'] = 'ACTIVE'
        return 200, {'name': name, 'state': config['state']}

    def _gateway_name(self, match) -> str:
        return f"projects/{self.project_id}/locations/{match['region']}/gateways/{match['gw']}"

    def _get_gateway(self, request, match, body):
        name = self._gateway_name(match)
        gateway = self.gateways.get(name)
        if gateway is None:
            return 404, {'error': {'code': 404, 'message': 'gateway not found'}}
        if gateway['state'] != 'ACTIVE' and self._tick(name):
            gateway['state'] = 'ACTIVE'
            gateway['defaultHostname'] = f"{match['gw']}-0abc.{match['region']}.gateway.dev"
        return 200, copy.deepcopy(gateway)

    def _create_gateway(self, request, match, body):
        gateway_id = request.url.params['gatewayId']
        name = f"projects/{self.project_id}/locations/{match['region']}/gateways/{gateway_id}"
        if name in self.gateways:
            return 409, {'error': {'code': 409, 'message': 'gateway already exists'}}
        self.gateways[name] = {'name': name, 'state': 'CREATING', 'apiConfig': body.get('apiConfig')}
        self._checks[name] = self.gateway_checks_until_active
        return self._operation(f"projects/{self.project_id}/locations/{match['region']}")

    def _patch_gateway(self, request, match, body):
        name = self._gateway_name(match)
        gateway = self.gateways.get(name)
        if gateway is None:
            return 404, {'error': {'code': 404, 'message': 'gateway not found'}}
        gateway['apiConfig'] = body.get('apiConfig')
        self._checks[name] = self.gateway_checks_until_active
        return self._operation(f"projects/{self.project_id}/locations/{match['region']}")

    def _submit_service_config(self, request, match, body):
        self.service_configs.append({'service': match['svc'], **body})
        return self._operation('', checks=0)

    # ---- API Keys ----

    def _list_keys(self, request, match, body):
        return 200, {'keys': [
            {'name': k['name'], 'displayName': k['displayName']} for k in self.api_keys.values()
        ]}

    def _create_key(self, request, match, body):
        key_id = self._next_id('key')
        name = f'projects/{self.project_number}/locations/global/keys/{key_id}'
        key = {
            'name': name,
            'displayName': body.get('displayName'),
            'restrictions': body.get('restrictions'),
            'keyString': f'AIzaFakeKey{key_id}',
        }
        self.api_keys[key_id] = key
        return self._operation(
            '',
            response={'name': name, 'keyString': key['keyString']},
            checks=self.api_key_checks_until_done,
        )

    def _key_string(self, request, match, body):
        key = self.api_keys.get(match['key'])
        if key is None:
            return 404, {'error': {'code': 404, 'message': 'key not found'}}
        return 200, {'keyString': key['keyString']}

    def _delete_key(self, request, match, body):
        self.api_keys.pop(match['key'], None)
        return self._operation('', checks=0)

    # ---- Operations ----

    def _get_operation(self, request, match, body):
        name = match['op']
        operation = self.operations.get(name)
        if operation is None:
            return 404, {'error': {'code': 404, 'message': f'operation {name} not found'}}
        if not operation['done'] and self._tick(name):
            operation['done'] = True
        return 200, copy.deepcopy(operation)


def _error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={'error': {'code': status, 'message': message}})
