"""Managed integration payload rendering.

The integration request is rendered from a text template and parsed as JSON
before it is submitted, so a malformed template fails locally with the
parser's own syntax error instead of as an opaque remote rejection.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from string import Template
from typing import Any

from fleetqa.errors import PayloadValidationError

logger = logging.getLogger(__name__)

ENDPOINT_PACKAGE_POLICY_TEMPLATE = """{
  "id": "$ID",
  "name": "$Name",
  "namespace": "default",
  "description": "Elastic Defend integration for convergence tests",
  "policy_id": "$PolicyID",
  "enabled": true,
  "package": {
    "name": "$Package",
    "version": "$Version"
  },
  "inputs": [
    {
      "type": "ENDPOINT_INTEGRATION_CONFIG",
      "enabled": true,
      "streams": [],
      "config": {
        "_config": {
          "value": {
            "type": "endpoint",
            "endpointConfig": {
              "preset": "DataCollection"
            }
          }
        }
      }
    }
  ]
}
"""


@dataclass(frozen=True)
class IntegrationPayload:
    integration_id: str
    name: str
    body: dict[str, Any]


def render_integration_payload(
    policy_id: str,
    version: str,
    name_prefix: str = "Defend",
    package: str = "endpoint",
    integration_id: str | None = None,
    template: str = ENDPOINT_PACKAGE_POLICY_TEMPLATE,
) -> IntegrationPayload:
    """Render and validate the integration request body.

    The integration name embeds a fresh id; the management API rejects a
    second integration with the same name.

    Raises:
        PayloadValidationError: If the template cannot be rendered or the
            result is not a JSON object.
    """
    integration_id = integration_id or str(uuid.uuid4())
    name = f"{name_prefix}-{integration_id}"

    try:
        rendered = Template(template).substitute(
            ID=integration_id,
            Name=name,
            PolicyID=policy_id,
            Version=version,
            Package=package,
        )
    except (KeyError, ValueError) as e:
        raise PayloadValidationError(
            message=f"Error executing integration template: {e}",
            payload=template,
            cause=e,
        ) from e

    try:
        body = json.loads(rendered)
    except json.JSONDecodeError as e:
        raise PayloadValidationError(
            message=f"Templated integration policy is not valid JSON: {e}",
            payload=rendered,
            cause=e,
        ) from e

    if not isinstance(body, dict):
        raise PayloadValidationError(
            message=f"Templated integration policy must be a JSON object, got {type(body).__name__}",
            payload=rendered,
        )

    logger.debug("Rendered integration payload %s for policy %s", name, policy_id)
    return IntegrationPayload(integration_id=integration_id, name=name, body=body)
