"""Installer facade: wires client, state store, step catalogue and orchestrator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

import httpx

from ..cancellation import AbortSignal
from ..client import GcpClient
from ..credentials import BearerCredential
from ..observability import bind_installation
from ..settings import InstallConfig, InstallerSettings
from ..state import InstallationStateStore, backend_from_settings
from .functions import FunctionSourceProvider
from .gcp_steps import STEP_API_KEYS, GcpProvisioningSteps
from .orchestrator import ProgressCallback, StepOrchestrator
from .results import InstallResult, compile_results
from .steps import StepContext

logger = logging.getLogger(__name__)


class CloudInstaller:
    """Provision one project end to end, resuming from persisted state."""

    def __init__(
        self,
        credential: BearerCredential,
        config: InstallConfig,
        *,
        settings: InstallerSettings | None = None,
        store: InstallationStateStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        function_sources: FunctionSourceProvider | None = None,
        progress: ProgressCallback | None = None,
        abort: AbortSignal | None = None,
    ) -> None:
        self._settings = settings or InstallerSettings()
        errors = self._settings.validate()
        if errors:
            raise ValueError(f"invalid installer settings: {'; '.join(errors)}")

        self._credential = credential
        self._config = config
        self._store = store or InstallationStateStore(
            backend_from_settings(self._settings),
            schema_version=self._settings.schema_version,
            ttl=timedelta(hours=self._settings.state_ttl_hours),
        )
        self._http_client = http_client
        self._function_sources = function_sources
        self._progress = progress
        self._abort = abort

    @property
    def store(self) -> InstallationStateStore:
        return self._store

    @asynccontextmanager
    async def _http_session(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or one owned by this call and closed after it."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient() as client:
            yield client

    def _catalogue(self, http: httpx.AsyncClient) -> GcpProvisioningSteps:
        client = GcpClient.from_settings(
            self._credential,
            self._settings,
            http_client=http,
            abort=self._abort,
        )
        return GcpProvisioningSteps(
            client,
            self._config,
            self._settings,
            function_sources=self._function_sources,
        )

    async def install(self) -> InstallResult:
        """Run every pending step and return the compiled result.

        Raises:
            StepFailedError: a step failed; earlier steps stay persisted.
            InstallationAborted: the abort signal fired.
        """
        project_id = self._config.project_id
        with bind_installation(project_id):
            logger.info('Starting installation', extra={'project_id': project_id})
            orchestrator = StepOrchestrator(
                self._store,
                schema_version=self._settings.schema_version,
                version_critical_steps=self._settings.version_critical_steps,
                progress=self._progress,
                abort=self._abort,
            )
            async with self._http_session() as http:
                outcome = await orchestrator.run(
                    project_id,
                    self._catalogue(http).steps(),
                    display_name=self._config.project_display_name,
                )
            result = compile_results(self._config, outcome.values, outcome)
            self._store.complete(project_id, result.to_dict())
            logger.info(
                'Installation finished',
                extra={
                    'project_id': project_id,
                    'degraded_steps': outcome.degraded_steps,
                    'skipped_steps': result.skipped_steps,
                },
            )
            return result

    async def regenerate_api_key(self) -> dict[str, Any]:
        """Replace the solution's API key and record it in the installation state."""
        project_id = self._config.project_id
        with bind_installation(project_id):
            state = self._store.load(project_id)
            resources = state.resources if state is not None else {}

            def _report(label: str, fraction: float) -> None:
                if self._progress is not None:
                    self._progress(label, int(100 * min(max(fraction, 0.0), 1.0)))

            context = StepContext(
                project_id=project_id,
                values={},
                resources={k: dict(v) for k, v in resources.items()},
                abort=self._abort,
                reporter=_report,
            )
            async with self._http_session() as http:
                result = await self._catalogue(http).generate_api_key(context, force=True)
            if result.is_degraded:
                logger.warning('API key regeneration degraded: %s', '; '.join(result.warnings))
                self._store.record_resources(project_id, result.resources)
            else:
                self._store.update_step(project_id, STEP_API_KEYS, result.resources)
            return {
                'api_key': result.values.get('api_key', ''),
                'api_key_id': result.values.get('api_key_id', ''),
                'warnings': list(result.warnings),
                'should_retry_later': result.should_retry_later,
            }

    def clear_state(self) -> None:
        self._store.clear(self._config.project_id)
