"""Tests for the prerequisites gate and remediation encoding."""
from __future__ import annotations

import base64
import json

import pytest

from gcp_installer.client import GcpAuthError, GcpNotFoundError, GcpPermissionDeniedError
from gcp_installer.errors import ErrorKind
from gcp_installer.prerequisites import (
    PREREQUISITES_MISSING_PREFIX,
    PrerequisitesGate,
    PrerequisitesMissingError,
    RemediationItem,
    decode_remediation,
    encode_remediation,
)

PROJECT = 'demo-1'


class _RoutedClient:
    """Answers ``call`` by the first matching URL fragment; unknown URLs 404."""

    def __init__(self, routes: dict[str, object]):
        self._routes = routes
        self.calls: list[tuple[str, str]] = []

    async def call(self, url, method='GET', body=None, **kwargs):
        self.calls.append((method, url))
        for fragment, answer in self._routes.items():
            if fragment in url:
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise GcpNotFoundError(url)


def _all_met(**overrides):
    routes = {
        '/v1beta1/projects/demo-1': {'projectId': PROJECT},
        'firebasestorage.app': {'name': f'{PROJECT}.firebasestorage.app'},
        'databases/(default)': {'name': 'projects/demo-1/databases/(default)'},
        '/v2/projects/demo-1/config': {'signIn': {'email': {'enabled': True}}},
        'accounts:query': {'userInfo': [{'localId': 'u1'}]},
    }
    routes.update(overrides)
    return routes


def _titles(result):
    return [item.title for item in result.remediation]


class TestPrerequisitesGate:
    @pytest.mark.asyncio
    async def test_all_met_passes(self):
        result = await PrerequisitesGate(_RoutedClient(_all_met())).evaluate(PROJECT)
        assert result.passed
        assert all(result.checks.values())
        result.raise_for_blocked()

    @pytest.mark.asyncio
    async def test_nothing_set_up_reports_only_upstream_items(self):
        result = await PrerequisitesGate(_RoutedClient({})).evaluate(PROJECT)
        assert not result.passed
        assert _titles(result) == [
            'Enable Firebase',
            'Set up Firebase Storage',
            'Create Firestore Database',
        ]

    @pytest.mark.asyncio
    async def test_auth_not_initialized_hides_downstream_items(self):
        routes = _all_met()
        del routes['/v2/projects/demo-1/config']
        client = _RoutedClient(routes)
        result = await PrerequisitesGate(client).evaluate(PROJECT)
        assert _titles(result) == ['Initialize Firebase Authentication']
        assert not any('accounts:query' in url for _, url in client.calls)

    @pytest.mark.asyncio
    async def test_email_disabled(self):
        routes = _all_met(**{'/v2/projects/demo-1/config': {'signIn': {'email': {'enabled': False}}}})
        result = await PrerequisitesGate(_RoutedClient(routes)).evaluate(PROJECT)
        assert _titles(result) == ['Enable Email/Password Sign-in']
        assert result.remediation[0].sub_steps

    @pytest.mark.asyncio
    async def test_missing_test_user(self):
        routes = _all_met(**{'accounts:query': {}})
        client = _RoutedClient(routes)
        result = await PrerequisitesGate(client).evaluate(PROJECT)
        assert _titles(result) == ['Create a Test User']
        assert ('POST', f'https://identitytoolkit.googleapis.com/v1/projects/{PROJECT}/accounts:query') in client.calls

    @pytest.mark.asyncio
    async def test_read_failure_counts_as_not_met(self):
        routes = _all_met(**{'firebasestorage.app': GcpPermissionDeniedError('denied')})
        result = await PrerequisitesGate(_RoutedClient(routes)).evaluate(PROJECT)
        assert _titles(result) == ['Set up Firebase Storage']

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self):
        routes = _all_met(**{'/v1beta1/projects/demo-1': GcpAuthError()})
        with pytest.raises(GcpAuthError):
            await PrerequisitesGate(_RoutedClient(routes)).evaluate(PROJECT)

    @pytest.mark.asyncio
    async def test_raise_for_blocked_carries_items(self):
        result = await PrerequisitesGate(_RoutedClient({})).evaluate(PROJECT)
        with pytest.raises(PrerequisitesMissingError) as exc_info:
            result.raise_for_blocked()
        err = exc_info.value
        assert err.kind is ErrorKind.MISSING_PREREQUISITE
        assert str(err).startswith(PREREQUISITES_MISSING_PREFIX)
        assert decode_remediation(str(err)) == err.remediation


class TestRemediationEncoding:
    def _item(self):
        return RemediationItem(
            title='Create Firestore Database',
            description='Keep the name "(default)" & choose <Production> rules.',
            action_label='Open Firestore',
            action_url='https://console.firebase.google.com/project/demo-1/firestore?tab=data&x=<1>',
            sub_steps=['Click "Create database"'],
        )

    def test_round_trip_keeps_urls_and_markup(self):
        item = self._item()
        decoded = decode_remediation(encode_remediation([item]))
        assert decoded == [item]
        assert decoded[0].action_url.endswith('?tab=data&x=<1>')

    def test_wire_form_is_camel_case_json(self):
        payload = json.loads(base64.b64decode(encode_remediation([self._item()])))
        assert set(payload[0]) == {'title', 'description', 'actionLabel', 'actionUrl', 'subSteps'}

    def test_decode_accepts_prefix(self):
        encoded = PREREQUISITES_MISSING_PREFIX + encode_remediation([self._item()])
        assert decode_remediation(encoded)[0].title == 'Create Firestore Database'

    @pytest.mark.parametrize(
        'payload',
        [
            'not base64!!',
            base64.b64encode(b'{not json').decode(),
            base64.b64encode(b'{"title": "x"}').decode(),
            base64.b64encode(b'[{"title": "x"}]').decode(),
        ],
    )
    def test_malformed_payload_raises_value_error(self, payload):
        with pytest.raises(ValueError):
            decode_remediation(payload)
