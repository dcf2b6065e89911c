"""HTTP adapter for the Kibana Fleet management API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from fleetqa.config import HarnessConfig
from fleetqa.errors import ManagementAPIError
from fleetqa.lifecycle.collaborators import (
    AgentHandle,
    AgentPolicySpec,
    IntegrationHandle,
    PolicyHandle,
)

logger = logging.getLogger(__name__)

AGENT_POLICIES = "/api/fleet/agent_policies"
PACKAGE_POLICIES = "/api/fleet/package_policies"
AGENTS = "/api/fleet/agents"


class FleetAPIClient:
    """ManagementAPI implementation over HTTP.

    Authenticates with an API key when one is given, otherwise with basic
    auth. Every non-2xx response raises ManagementAPIError carrying the
    status code and body.

    Example::

        with FleetAPIClient.from_config(config) as fleet:
            policy = fleet.create_policy(AgentPolicySpec.for_run())
    """

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"kbn-xsrf": "fleetqa", "Content-Type": "application/json"}
        auth: httpx.Auth | None = None
        if api_key:
            headers["Authorization"] = f"ApiKey {api_key}"
        elif username and password:
            auth = httpx.BasicAuth(username, password)
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            auth=auth,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: HarnessConfig, **kwargs: Any) -> FleetAPIClient:
        return cls(
            base_url=config.fleet_url,
            username=config.fleet_username,
            password=config.fleet_password,
            api_key=config.fleet_api_key,
            timeout=config.fleet_request_timeout,
            verify=config.fleet_verify_ssl,
            **kwargs,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("%s %s", method, path)
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ManagementAPIError(
                message=f"{method} {path} failed: {e}",
                cause=e,
                method=method,
                path=path,
            ) from e

        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                body: Any = resp.json()
            except ValueError:
                body = resp.text
        else:
            body = resp.text

        if resp.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            raise ManagementAPIError(
                message=f"{method} {path} returned {resp.status_code}: {message or body}",
                status_code=resp.status_code,
                response_body=body,
                method=method,
                path=path,
            )
        return body

    @staticmethod
    def _item(body: Any, path: str) -> dict[str, Any]:
        item = body.get("item") if isinstance(body, dict) else None
        if not isinstance(item, dict) or "id" not in item:
            raise ManagementAPIError(
                message=f"Unexpected response from {path}: missing item id",
                response_body=body,
            )
        return item

    def create_policy(self, spec: AgentPolicySpec) -> PolicyHandle:
        body = self._request("POST", AGENT_POLICIES, json=spec.to_api_body())
        item = self._item(body, AGENT_POLICIES)
        logger.info("Created agent policy %s (%s)", item.get("name", spec.name), item["id"])
        return PolicyHandle(policy_id=item["id"], name=item.get("name", spec.name))

    def install_managed_integration(
        self, policy: PolicyHandle, payload: dict[str, Any]
    ) -> IntegrationHandle:
        body = self._request("POST", PACKAGE_POLICIES, json=payload)
        item = self._item(body, PACKAGE_POLICIES)
        return IntegrationHandle(
            integration_id=item["id"],
            name=item.get("name", ""),
            policy_id=item.get("policy_id", policy.policy_id),
        )

    def remove_managed_integration(self, integration: IntegrationHandle) -> None:
        self._request("DELETE", f"{PACKAGE_POLICIES}/{integration.integration_id}")

    def unenroll(self, agent: AgentHandle) -> None:
        self._request("POST", f"{AGENTS}/{agent.agent_id}/unenroll", json={})

    def lookup_agent(self, policy: PolicyHandle, host_identity: str) -> AgentHandle:
        """Find the agent enrolled into ``policy`` on the given host.

        Raises:
            ManagementAPIError: If no such agent is enrolled.
        """
        body = self._request(
            "GET",
            AGENTS,
            params={"kuery": f'policy_id:"{policy.policy_id}"', "perPage": 100},
        )
        agents = []
        if isinstance(body, dict):
            agents = body.get("items") or body.get("list") or []
        for agent in agents:
            hostname = (
                ((agent.get("local_metadata") or {}).get("host") or {}).get("hostname") or ""
            )
            if hostname.lower() == host_identity.lower():
                return AgentHandle(agent_id=agent["id"], hostname=hostname)
        raise ManagementAPIError(
            message=f"No agent with hostname {host_identity} enrolled in policy {policy.policy_id}",
            status_code=404,
            response_body=body,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> FleetAPIClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
