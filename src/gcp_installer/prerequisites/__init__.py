"""Prerequisites gate and remediation payloads."""

from .gate import GateResult, PrerequisitesGate, PrerequisitesMissingError
from .schemas import (
    PREREQUISITES_MISSING_PREFIX,
    RemediationItem,
    decode_remediation,
    encode_remediation,
)

__all__ = [
    'PREREQUISITES_MISSING_PREFIX',
    'GateResult',
    'PrerequisitesGate',
    'PrerequisitesMissingError',
    'RemediationItem',
    'decode_remediation',
    'encode_remediation',
]
