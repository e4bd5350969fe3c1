"""Task execution collaborators for dispatched template payloads."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from fleet_guard.engine.event_log import EventLog
from fleet_guard.engine.models import (
    AgentFilter,
    AgentStatus,
    AgentView,
    EventKind,
    FleetEvent,
    ScheduleTemplateView,
    SubjectType,
    TaskDispatchView,
)
from fleet_guard.engine.registry import FleetRegistry

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """Payload could not be handed to the execution side; the dispatch may be retried."""


@dataclass(slots=True)
class DispatchRequest:
    dispatch: TaskDispatchView
    template: ScheduleTemplateView
    agent: AgentView

    @property
    def payload(self) -> dict[str, Any]:
        return self.template.payload

    def as_json(self) -> dict[str, Any]:
        return {
            "dispatch_id": self.dispatch.dispatch_id,
            "attempt": self.dispatch.attempt,
            "template_id": self.template.template_id,
            "template_name": self.template.name,
            "handler": self.template.handler,
            "agent_id": self.agent.agent_id,
            "agent_name": self.agent.name,
            "window_start": self.dispatch.window_start.isoformat(),
            "payload": self.payload,
        }


class TaskExecutor(Protocol):
    """Receives dispatched work; raising `DeliveryError` counts as a failed delivery."""

    def deliver(self, request: DispatchRequest, *, now: datetime) -> None:
        raise NotImplementedError


class DispatchContext:
    """Capabilities a handler may use; handlers never see the registry itself."""

    def __init__(self, *, registry: FleetRegistry, event_log: EventLog, now: datetime) -> None:
        self._registry = registry
        self._event_log = event_log
        self.now = now

    def list_agents(self, agent_filter: AgentFilter | None = None) -> list[AgentView]:
        """Read-only query."""

        return self._registry.list_agents(agent_filter)

    def append_event(
        self,
        kind: EventKind,
        *,
        subject_type: SubjectType = SubjectType.SYSTEM,
        subject_id: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """The only mutation available to handlers."""

        self._event_log.append(
            FleetEvent(
                subject_type=subject_type,
                subject_id=subject_id,
                kind=kind,
                created_at=self.now,
                detail=detail or {},
            ),
        )


Handler = Callable[[DispatchContext, DispatchRequest], None]


def run_health_check(context: DispatchContext, request: DispatchRequest) -> None:
    """Report agents that are crashed, stale or behind an open circuit."""

    stale_after = request.payload.get("stale_after_seconds")
    agents = context.list_agents()
    unhealthy: list[dict[str, Any]] = []
    for agent in agents:
        reasons: list[str] = []
        if agent.status in (AgentStatus.CRASHED, AgentStatus.OFFLINE):
            reasons.append(agent.status.value)
        if agent.circuit_open(context.now):
            reasons.append("circuit_open")
        if (
            isinstance(stale_after, int | float)
            and agent.heartbeat_age(context.now).total_seconds() > stale_after
        ):
            reasons.append("heartbeat_stale")
        if reasons:
            unhealthy.append({"agent_id": agent.agent_id, "name": agent.name, "reasons": reasons})

    context.append_event(
        EventKind.FLEET_HEALTH_REPORT,
        subject_type=SubjectType.TEMPLATE,
        subject_id=request.template.template_id,
        detail={
            "dispatch_id": request.dispatch.dispatch_id,
            "total_agents": len(agents),
            "unhealthy_agents": unhealthy,
        },
    )
    if unhealthy:
        logger.warning(
            "Fleet health check: %d of %d agents unhealthy",
            len(unhealthy),
            len(agents),
        )
    else:
        logger.info("Fleet health check: all %d agents healthy", len(agents))


def run_custom_task(context: DispatchContext, request: DispatchRequest) -> None:
    del context
    action = request.payload.get("action", "unspecified")
    logger.info(
        "Custom task %s for agent %s: action=%s",
        request.template.name,
        request.agent.name,
        action,
    )


BUILTIN_HANDLERS: dict[str, Handler] = {
    "health_check": run_health_check,
    "custom": run_custom_task,
    "noop": run_custom_task,
}


class HandlerExecutor:
    """Run template payloads in-process through named handlers."""

    def __init__(
        self,
        *,
        registry: FleetRegistry,
        event_log: EventLog,
        handlers: dict[str, Handler] | None = None,
    ) -> None:
        self.registry = registry
        self.event_log = event_log
        self.handlers = dict(BUILTIN_HANDLERS if handlers is None else handlers)

    def deliver(self, request: DispatchRequest, *, now: datetime) -> None:
        handler = self.handlers.get(request.template.handler)
        if handler is None:
            raise DeliveryError(f"Unknown dispatch handler: {request.template.handler!r}")
        context = DispatchContext(registry=self.registry, event_log=self.event_log, now=now)
        try:
            handler(context, request)
        except DeliveryError:
            raise
        except Exception as error:
            raise DeliveryError(f"Handler {request.template.handler!r} failed: {error}") from error


class HttpTaskExecutor:
    """POST the dispatch to the agent's endpoint, or to a shared delivery URL."""

    def __init__(
        self,
        *,
        delivery_url: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.delivery_url = delivery_url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def deliver(self, request: DispatchRequest, *, now: datetime) -> None:
        url = request.agent.endpoint_url or self.delivery_url
        if not url:
            raise DeliveryError(f"No delivery endpoint for agent {request.agent.name}")
        body = request.as_json()
        body["sent_at"] = now.isoformat()
        try:
            response = self._client.post(url, json=body)
        except httpx.HTTPError as error:
            raise DeliveryError(f"Delivery to {url} failed: {error}") from error
        if not response.is_success:
            raise DeliveryError(f"Delivery to {url} returned HTTP {response.status_code}")

    def close(self) -> None:
        self._client.close()
