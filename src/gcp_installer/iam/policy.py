"""Additive IAM policy merging.

A policy document is read, merged with the requested role grants and
written back as a whole. Merging never removes a member or touches a role
it was not asked about, so concurrent installers and manual grants survive,
and re-applying the same grants is a no-op.

Malformed members (empty, missing the ``type:`` prefix, or naming an
identity that was never resolved) are stripped before writing because the
control plane rejects the whole document when one member is invalid.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from ..client.errors import GcpConflictError

logger = logging.getLogger(__name__)

_MEMBER_TYPES = frozenset(
    {
        'user',
        'serviceAccount',
        'group',
        'domain',
        'allUsers',
        'allAuthenticatedUsers',
        'principal',
        'principalSet',
        'deleted',
    }
)
_BARE_MEMBERS = frozenset({'allUsers', 'allAuthenticatedUsers'})
# Identity names left behind when a lookup produced no value.
_UNRESOLVED_NAMES = frozenset({'undefined', 'None', 'null'})

RESOURCE_MANAGER_URL = 'https://cloudresourcemanager.googleapis.com/v1'
IAM_URL = 'https://iam.googleapis.com/v1'
FUNCTIONS_URL = 'https://cloudfunctions.googleapis.com/v2'


# ── Scopes and bindings ──────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class PolicyScope:
    """Read and write endpoints of one resource's IAM policy."""

    get_url: str
    set_url: str
    label: str
    get_method: str = 'POST'


def project_scope(project_id: str) -> PolicyScope:
    base = f'{RESOURCE_MANAGER_URL}/projects/{project_id}'
    return PolicyScope(
        get_url=f'{base}:getIamPolicy',
        set_url=f'{base}:setIamPolicy',
        label=f'project {project_id}',
    )


def service_account_scope(project_id: str, email: str) -> PolicyScope:
    base = f'{IAM_URL}/projects/{project_id}/serviceAccounts/{email}'
    return PolicyScope(
        get_url=f'{base}:getIamPolicy',
        set_url=f'{base}:setIamPolicy',
        label=f'service account {email}',
    )


def function_scope(project_id: str, region: str, name: str) -> PolicyScope:
    base = f'{FUNCTIONS_URL}/projects/{project_id}/locations/{region}/functions/{name}'
    return PolicyScope(
        get_url=f'{base}:getIamPolicy',
        set_url=f'{base}:setIamPolicy',
        label=f'function {name}',
        get_method='GET',
    )


@dataclass(frozen=True, slots=True)
class RoleBinding:
    role: str
    member: str


def service_account_member(email: str) -> str:
    return f'serviceAccount:{email}'


def is_valid_member(member: Any) -> bool:
    """True for a well-formed ``type:value`` member naming a resolved identity."""
    if not isinstance(member, str) or not member.strip():
        return False
    if member in _BARE_MEMBERS:
        return True
    kind, sep, value = member.partition(':')
    if not sep or kind not in _MEMBER_TYPES or not value.strip():
        return False
    return value.partition('@')[0] not in _UNRESOLVED_NAMES


# ── Pure merge functions ─────────────────────────────────────────


def normalize_policy(policy: dict[str, Any] | None) -> dict[str, Any]:
    """Return a copy with malformed members and empty bindings removed."""
    normalized = copy.deepcopy(policy) if policy else {}
    bindings: list[dict[str, Any]] = []
    for binding in normalized.get('bindings') or []:
        if not isinstance(binding, dict) or not binding.get('role'):
            continue
        members = binding.get('members') or []
        kept = [m for m in members if is_valid_member(m)]
        dropped = len(members) - len(kept)
        if dropped:
            logger.warning(
                'Stripping %d malformed member(s) from %s',
                dropped,
                binding['role'],
                extra={'role': binding['role']},
            )
        if kept:
            bindings.append({**binding, 'members': kept})
    normalized['bindings'] = bindings
    return normalized


def merge_bindings(
    policy: dict[str, Any] | None,
    bindings: Iterable[RoleBinding],
) -> dict[str, Any]:
    """Additively merge ``bindings`` into a normalized copy of ``policy``.

    Conditional bindings are never merged into; an unconditional binding
    for the same role is created instead.
    """
    merged = normalize_policy(policy)
    existing = merged['bindings']
    for grant in bindings:
        if not is_valid_member(grant.member):
            logger.warning(
                'Skipping malformed member %r for %s',
                grant.member,
                grant.role,
                extra={'role': grant.role},
            )
            continue
        target = next(
            (b for b in existing if b['role'] == grant.role and not b.get('condition')),
            None,
        )
        if target is None:
            existing.append({'role': grant.role, 'members': [grant.member]})
        elif grant.member not in target['members']:
            target['members'].append(grant.member)
    return merged


def _member_sets(policy: dict[str, Any]) -> set[tuple[str, str, str]]:
    return {
        (b['role'], repr(b.get('condition')), m)
        for b in policy.get('bindings', [])
        for m in b.get('members', [])
    }


# ── Engine ───────────────────────────────────────────────────────


class PolicyMergeEngine:
    """Read-merge-write cycles against IAM policy endpoints."""

    def __init__(self, client: Any, *, conflict_retries: int = 1) -> None:
        self._client = client
        self._conflict_retries = conflict_retries

    async def _read(self, scope: PolicyScope) -> dict[str, Any]:
        if scope.get_method == 'GET':
            return await self._client.call(scope.get_url, 'GET')
        return await self._client.call(scope.get_url, 'POST', {})

    async def bulk_apply(
        self,
        scope: PolicyScope,
        bindings: Iterable[RoleBinding],
    ) -> dict[str, Any]:
        """Apply every binding in one read-merge-write cycle.

        The read's ``etag`` travels with the write; if another writer got in
        first (409) the cycle is repeated against the fresh policy.

        Returns the policy as written (or as read, when nothing changed).
        """
        grants = list(bindings)
        attempt = 0
        while True:
            current = await self._read(scope)
            merged = merge_bindings(current, grants)
            if _member_sets(merged) == _member_sets(normalize_policy(current)):
                logger.debug('IAM policy of %s already up to date', scope.label)
                return merged

            try:
                written = await self._client.call(scope.set_url, 'POST', {'policy': merged})
            except GcpConflictError:
                if attempt >= self._conflict_retries:
                    raise
                attempt += 1
                logger.warning(
                    'Concurrent IAM policy update on %s, re-reading (retry %d/%d)',
                    scope.label,
                    attempt,
                    self._conflict_retries,
                )
                continue

            logger.info(
                'Updated IAM policy of %s (%d grant(s))',
                scope.label,
                len(grants),
                extra={'scope': scope.label, 'roles': sorted({g.role for g in grants})},
            )
            return written or merged

    async def grant_role(self, scope: PolicyScope, role: str, member: str) -> dict[str, Any]:
        return await self.bulk_apply(scope, [RoleBinding(role, member)])

    async def grant_token_creator(
        self,
        project_id: str,
        target_email: str,
        member_email: str,
    ) -> dict[str, Any]:
        """Let ``member_email`` mint tokens for ``target_email``."""
        return await self.grant_role(
            service_account_scope(project_id, target_email),
            'roles/iam.serviceAccountTokenCreator',
            service_account_member(member_email),
        )
