"""Control-plane call client and operation poller."""

from .errors import (
    CallOutcome,
    GcpApiError,
    GcpAuthError,
    GcpConflictError,
    GcpNotFoundError,
    GcpPermissionDeniedError,
    GcpTimeoutError,
    classify_status,
)
from .gcp_client import GcpClient
from .poller import (
    PollProgress,
    PollResult,
    describe_elapsed,
    operation_done,
    poll_until_terminal,
    state_in,
    wait_for_operation,
)

__all__ = [
    'CallOutcome',
    'GcpApiError',
    'GcpAuthError',
    'GcpClient',
    'GcpConflictError',
    'GcpNotFoundError',
    'GcpPermissionDeniedError',
    'GcpTimeoutError',
    'PollProgress',
    'PollResult',
    'classify_status',
    'describe_elapsed',
    'operation_done',
    'poll_until_terminal',
    'state_in',
    'wait_for_operation',
]
