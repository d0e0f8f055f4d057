"""Prerequisites gate.

Some conditions cannot be satisfied by the installer because they need
interactive consent or an irreversible choice in the Firebase console
(enabling Firebase, choosing the Firestore region, enabling a sign-in
method, seeding a test user). The gate reads each one and, when any is
unmet, blocks the run with structured remediation.

A failed read means "not met". Reporting follows the dependency order:
a downstream condition is only reported once its upstream one passed, so
the caller never sees an instruction it cannot act on yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..client.errors import GcpApiError, GcpAuthError
from ..errors import ErrorKind, InstallerError
from .schemas import PREREQUISITES_MISSING_PREFIX, RemediationItem, encode_remediation

logger = logging.getLogger(__name__)

CONSOLE_URL = 'https://console.firebase.google.com/project'

CHECK_FIREBASE = 'firebase_enabled'
CHECK_STORAGE = 'storage_bucket'
CHECK_FIRESTORE = 'firestore_database'
CHECK_AUTH_INITIALIZED = 'auth_initialized'
CHECK_EMAIL_PASSWORD = 'email_password_enabled'
CHECK_TEST_USER = 'test_user_present'


class PrerequisitesMissingError(InstallerError):
    """Raised when externally-managed prerequisites are unmet.

    Carries the typed remediation list. ``str()`` is the encoded
    ``PREREQUISITES_MISSING:<base64>`` form for text-only transports.
    """

    kind = ErrorKind.MISSING_PREREQUISITE

    def __init__(self, remediation: list[RemediationItem]) -> None:
        self.remediation = list(remediation)
        self.encoded = encode_remediation(self.remediation)
        super().__init__(f'{PREREQUISITES_MISSING_PREFIX}{self.encoded}')


@dataclass(frozen=True, slots=True)
class GateResult:
    passed: bool
    checks: dict[str, bool] = field(default_factory=dict)
    remediation: list[RemediationItem] = field(default_factory=list)

    def raise_for_blocked(self) -> None:
        if not self.passed:
            raise PrerequisitesMissingError(self.remediation)


def _remediation_for(project_id: str, check: str) -> RemediationItem:
    console = f'{CONSOLE_URL}/{project_id}'
    if check == CHECK_FIREBASE:
        return RemediationItem(
            title='Enable Firebase',
            description='Firebase must be enabled for authentication and storage.',
            action_label='Open Firebase Console and click "Get started"',
            action_url=f'{console}/overview',
        )
    if check == CHECK_STORAGE:
        return RemediationItem(
            title='Set up Firebase Storage',
            description=(
                'The Firebase Storage bucket must be created manually because its '
                'location cannot be changed afterwards.'
            ),
            action_label='Open Firebase Storage, click "Get started" and choose a location',
            action_url=f'{console}/storage',
        )
    if check == CHECK_FIRESTORE:
        return RemediationItem(
            title='Create Firestore Database',
            description=(
                'The Firestore database must be created manually to choose its region '
                'and security rules. Keep the database name "(default)" and choose '
                '"Production mode" rules.'
            ),
            action_label='Open Firestore and click "Create database"',
            action_url=f'{console}/firestore',
        )
    if check == CHECK_AUTH_INITIALIZED:
        return RemediationItem(
            title='Initialize Firebase Authentication',
            description='Firebase Authentication must be initialized before sign-in methods can be enabled.',
            action_label='Open Firebase Authentication and click "Get started"',
            action_url=f'{console}/authentication',
        )
    if check == CHECK_EMAIL_PASSWORD:
        return RemediationItem(
            title='Enable Email/Password Sign-in',
            description='Device authentication signs in with email and password.',
            action_label='Open the sign-in providers and enable "Email/Password"',
            action_url=f'{console}/authentication/providers',
            sub_steps=[
                'Click "Email/Password" in the providers list',
                'Toggle "Enable" on',
                'Click "Save"',
            ],
        )
    if check == CHECK_TEST_USER:
        return RemediationItem(
            title='Create a Test User',
            description='At least one user is required to test the authentication flow.',
            action_label='Open Firebase Authentication users and add a test user',
            action_url=f'{console}/authentication/users',
            sub_steps=[
                'Click "Add user"',
                'Enter a test email such as test@example.com',
                'Enter a secure password',
                'Click "Add user"',
                'Keep these credentials for testing device authentication',
            ],
        )
    raise ValueError(f'unknown prerequisite check: {check!r}')


class PrerequisitesGate:
    """Evaluates the fixed prerequisites checklist for one project."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def _exists(self, url: str, check: str, **kwargs: Any) -> dict[str, Any] | None:
        try:
            return await self._client.call(url, **kwargs)
        except GcpAuthError:
            raise
        except GcpApiError as exc:
            logger.info('Prerequisite %s not met: %s', check, exc.message, extra={'check': check})
            return None

    async def evaluate(self, project_id: str) -> GateResult:
        checks = dict.fromkeys(
            (
                CHECK_FIREBASE,
                CHECK_STORAGE,
                CHECK_FIRESTORE,
                CHECK_AUTH_INITIALIZED,
                CHECK_EMAIL_PASSWORD,
                CHECK_TEST_USER,
            ),
            False,
        )

        checks[CHECK_FIREBASE] = await self._exists(
            f'https://firebase.googleapis.com/v1beta1/projects/{project_id}', CHECK_FIREBASE,
        ) is not None
        checks[CHECK_STORAGE] = await self._exists(
            f'https://storage.googleapis.com/storage/v1/b/{project_id}.firebasestorage.app',
            CHECK_STORAGE,
        ) is not None
        checks[CHECK_FIRESTORE] = await self._exists(
            f'https://firestore.googleapis.com/v1/projects/{project_id}/databases/(default)',
            CHECK_FIRESTORE,
        ) is not None

        if checks[CHECK_FIREBASE]:
            auth_config = await self._exists(
                f'https://identitytoolkit.googleapis.com/v2/projects/{project_id}/config',
                CHECK_AUTH_INITIALIZED,
            )
            checks[CHECK_AUTH_INITIALIZED] = auth_config is not None
            if auth_config is not None:
                email = (auth_config.get('signIn') or {}).get('email') or {}
                checks[CHECK_EMAIL_PASSWORD] = email.get('enabled') is True

        if checks[CHECK_EMAIL_PASSWORD]:
            users = await self._exists(
                f'https://identitytoolkit.googleapis.com/v1/projects/{project_id}/accounts:query',
                CHECK_TEST_USER,
                method='POST',
                body={'returnUserInfo': True, 'maxResults': 1},
            )
            checks[CHECK_TEST_USER] = bool(users and users.get('userInfo'))

        reportable = [CHECK_FIREBASE, CHECK_STORAGE, CHECK_FIRESTORE]
        if checks[CHECK_FIREBASE]:
            reportable.append(CHECK_AUTH_INITIALIZED)
        if checks[CHECK_AUTH_INITIALIZED]:
            reportable.append(CHECK_EMAIL_PASSWORD)
        if checks[CHECK_EMAIL_PASSWORD]:
            reportable.append(CHECK_TEST_USER)

        remediation = [
            _remediation_for(project_id, check)
            for check in reportable
            if not checks[check]
        ]
        if remediation:
            logger.warning(
                'Project %s is missing %d prerequisite(s)',
                project_id,
                len(remediation),
                extra={'missing': [item.title for item in remediation]},
            )
        return GateResult(passed=not remediation, checks=checks, remediation=remediation)
