"""IAM policy merge engine."""

from .policy import (
    PolicyMergeEngine,
    PolicyScope,
    RoleBinding,
    function_scope,
    is_valid_member,
    merge_bindings,
    normalize_policy,
    project_scope,
    service_account_member,
    service_account_scope,
)

__all__ = [
    'PolicyMergeEngine',
    'PolicyScope',
    'RoleBinding',
    'function_scope',
    'is_valid_member',
    'merge_bindings',
    'normalize_policy',
    'project_scope',
    'service_account_member',
    'service_account_scope',
]
