"""Provisioning steps, orchestration and the installer facade."""

from .functions import (
    DirectoryFunctionSources,
    FunctionSourceMissing,
    FunctionSourceProvider,
    InMemoryFunctionSources,
)
from .gcp_steps import GcpProvisioningSteps
from .installer import CloudInstaller
from .orchestrator import OrchestrationOutcome, SkippedStep, StepOrchestrator
from .results import InstallResult, compile_results
from .state_machine import InvalidRunTransition, OrchestratorRun
from .steps import Step, StepContext, StepResult, validate_steps

__all__ = [
    'CloudInstaller',
    'DirectoryFunctionSources',
    'FunctionSourceMissing',
    'FunctionSourceProvider',
    'GcpProvisioningSteps',
    'InMemoryFunctionSources',
    'InstallResult',
    'InvalidRunTransition',
    'OrchestrationOutcome',
    'OrchestratorRun',
    'SkippedStep',
    'Step',
    'StepContext',
    'StepOrchestrator',
    'StepResult',
    'compile_results',
    'validate_steps',
]
