"""Restart agents through a supervisor HTTP API."""

from __future__ import annotations

import logging
from http import HTTPStatus

import httpx

from fleet_guard.engine.models import AgentView
from fleet_guard.engine.supervisor.base import RestartResult

logger = logging.getLogger(__name__)


class HttpSupervisor:
    """POST `{base_url}/agents/{agent_id}/restart`.

    A 2xx response accepts the request. 409 means the process is already
    being (re)started, which is the idempotent success case.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def request_restart(self, agent: AgentView) -> RestartResult:
        try:
            response = self._client.post(
                f"/agents/{agent.agent_id}/restart",
                json={"agent_id": agent.agent_id, "name": agent.name, "role": agent.role},
            )
        except httpx.HTTPError as error:
            logger.warning("Supervisor request failed for %s: %s", agent.agent_id, error)
            return RestartResult.rejected(f"supervisor unreachable: {error}")

        if response.is_success or response.status_code == HTTPStatus.CONFLICT:
            return RestartResult(accepted=True)
        return RestartResult.rejected(
            f"supervisor returned HTTP {response.status_code}: {response.text[:200]}",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpSupervisor:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
