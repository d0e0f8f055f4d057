"""OpenAPI (Swagger 2.0) document served by the API gateway."""

from __future__ import annotations

import base64
import json
from typing import Any

from .naming import ResourceNames


def _post_operation(
    *,
    summary: str,
    operation_id: str,
    required_field: str,
    response_description: str,
    response_properties: dict[str, Any],
    backend_url: str,
) -> dict[str, Any]:
    return {
        'post': {
            'summary': summary,
            'operationId': operation_id,
            'consumes': ['application/json'],
            'parameters': [
                {
                    'in': 'body',
                    'name': 'body',
                    'required': True,
                    'schema': {
                        'type': 'object',
                        'required': [required_field],
                        'properties': {required_field: {'type': 'string'}},
                    },
                }
            ],
            'responses': {
                '200': {
                    'description': response_description,
                    'schema': {'type': 'object', 'properties': response_properties},
                }
            },
            'x-google-backend': {'address': backend_url},
        }
    }


def build_openapi_document(
    names: ResourceNames,
    managed_service: str,
    *,
    device_auth_url: str | None = None,
    tvm_url: str | None = None,
) -> dict[str, Any]:
    """Gateway document routing device auth and token vending to the functions."""
    return {
        'swagger': '2.0',
        'info': {
            'title': f'{names.prefix} Device API',
            'version': '1.0.0',
            'description': 'API for device auth & GCP token vending.',
        },
        'host': managed_service,
        'schemes': ['https'],
        'produces': ['application/json'],
        'securityDefinitions': {
            'api_key': {'type': 'apiKey', 'name': 'x-api-key', 'in': 'header'},
        },
        'security': [{'api_key': []}],
        'paths': {
            '/device-auth/initiate': _post_operation(
                summary='Fetches Firebase Custom Token.',
                operation_id='fetchFirebaseCustomToken',
                required_field='device_id',
                response_description='Firebase Custom Token',
                response_properties={'firebase_custom_token': {'type': 'string'}},
                backend_url=device_auth_url or names.function_url('device-auth'),
            ),
            '/gcp-token/vend': _post_operation(
                summary='Exchanges Firebase ID Token for GCP Token.',
                operation_id='exchangeFirebaseIdTokenForGcpToken',
                required_field='firebase_id_token',
                response_description='GCP Access Token',
                response_properties={
                    'gcp_access_token': {'type': 'string'},
                    'expires_in': {'type': 'integer'},
                },
                backend_url=tvm_url or names.function_url('tvm'),
            ),
        },
    }


def render_openapi_document(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2)


def encode_openapi_document(document: dict[str, Any]) -> str:
    """Base64 form expected by API config and service config uploads."""
    return base64.b64encode(render_openapi_document(document).encode('utf-8')).decode('ascii')
