"""Remediation payload models and their text encoding.

The payload is base64-encoded JSON so that text-sanitizing transports
(HTML escaping, log scrubbing) cannot corrupt embedded URLs.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

PREREQUISITES_MISSING_PREFIX = 'PREREQUISITES_MISSING:'


class RemediationItem(BaseModel):
    """One externally-managed condition the caller must fix by hand."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = Field(min_length=1)
    description: str
    action_label: str = Field(alias='actionLabel')
    action_url: str = Field(alias='actionUrl')
    sub_steps: list[str] = Field(default_factory=list, alias='subSteps')


def encode_remediation(items: Iterable[RemediationItem]) -> str:
    """Encode items as base64 of their camelCase JSON form."""
    payload = [item.model_dump(by_alias=True) for item in items]
    raw = json.dumps(payload, separators=(',', ':'), ensure_ascii=False)
    return base64.b64encode(raw.encode('utf-8')).decode('ascii')


def decode_remediation(text: str) -> list[RemediationItem]:
    """Decode a payload, with or without the ``PREREQUISITES_MISSING:`` prefix.

    Raises:
        ValueError: the payload is not valid base64, JSON or remediation data.
    """
    encoded = text.strip()
    if encoded.startswith(PREREQUISITES_MISSING_PREFIX):
        encoded = encoded[len(PREREQUISITES_MISSING_PREFIX):]
    try:
        raw = base64.b64decode(encoded, validate=True)
        payload = json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f'malformed remediation payload: {exc}') from exc
    if not isinstance(payload, list):
        raise ValueError('malformed remediation payload: expected a list')
    try:
        return [RemediationItem.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise ValueError(f'malformed remediation payload: {exc}') from exc
