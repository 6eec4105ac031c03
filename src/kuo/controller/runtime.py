"""Controller runtime: per-object reconcile loops driven by kopf.

Every watched object gets one loop task, so reconciles for the same object
never overlap. The loop runs the reconciler, then sleeps until the returned
requeue delay elapses, a change to the object is observed, or the object
(or the operator) goes away. Loops are started, woken and stopped from a
kopf event handler. Event handlers need no finalizer, so watched objects
are never written to by the runtime itself.

Errors never choose their own delay: ``error_policy`` maps every exception
to an :class:`Action`.

Example:
    >>> registry = kopf.OperatorRegistry()
    >>> register_controllers(
    ...     registry,
    ...     managed_users=ManagedUserReconciler(ctx),
    ...     csrs=CSRReconciler(ctx),
    ...     operator_name="kuo-operator",
    ... )
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import kopf
import pydantic
import structlog

from kuo.config import ERROR_REQUEUE_SECONDS, MALFORMED_REQUEUE_SECONDS
from kuo.errors import MalformedObjectError
from kuo.kube.meta import MANAGED_BY_LABEL
from kuo.models.managed_user import GROUP, KIND, PLURAL, VERSION
from kuo.tracing import ATTR_REQUEUE_AFTER, get_tracer, reconcile_span

logger = structlog.get_logger(__name__)

CSR_GROUP = "certificates.k8s.io"
CSR_VERSION = "v1"
CSR_PLURAL = "certificatesigningrequests"
CSR_KIND = "CertificateSigningRequest"


@dataclass(frozen=True)
class Action:
    """What to do after a reconcile pass.

    Attributes:
        requeue_after: Seconds until the next reconcile of the same object.
    """

    requeue_after: float

    @classmethod
    def requeue(cls, seconds: float) -> Action:
        """Reconcile again after ``seconds`` unless woken earlier."""
        return cls(requeue_after=seconds)


class Reconciler(Protocol):
    """Reconciles one object and tells the runtime when to come back."""

    async def reconcile(self, body: Mapping[str, Any]) -> Action: ...


class StopFlag(Protocol):
    """Flag raised when an object loop must end."""

    def __bool__(self) -> bool: ...

    def wait(self, timeout: float | None = None) -> Awaitable[Any]: ...


class LoopStop:
    """Stop flag owned by the controller for one object loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def __bool__(self) -> bool:
        return self._event.is_set()

    def set(self) -> None:
        self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


def error_policy(error: BaseException) -> Action:
    """Choose the requeue delay after a failed reconcile.

    Objects that cannot make progress in their current state (malformed or
    denied) wait longer so the controller does not busy-loop on them.
    Everything else is assumed transient.

    Args:
        error: Exception raised by the reconciler.

    Returns:
        Requeue action.
    """
    if isinstance(error, (MalformedObjectError, pydantic.ValidationError)):
        return Action.requeue(MALFORMED_REQUEUE_SECONDS)
    return Action.requeue(ERROR_REQUEUE_SECONDS)


class Controller:
    """Runs one reconciler for every object of one kind.

    Attributes:
        kind: Resource kind, used in logs and spans.
        reconciler: Reconciler invoked for each object.
    """

    def __init__(self, kind: str, reconciler: Reconciler) -> None:
        self.kind = kind
        self.reconciler = reconciler
        self._wakeups: dict[str, asyncio.Event] = {}
        self._bodies: dict[str, Mapping[str, Any]] = {}
        self._loops: dict[str, tuple[asyncio.Task[None], LoopStop]] = {}
        self._tracer = get_tracer()
        self._log = logger.bind(component="controller", kind=kind)

    def notify(self, key: str) -> None:
        """Wake the loop of an object after a change was observed."""
        event = self._wakeups.get(key)
        if event is not None:
            event.set()

    @property
    def active_keys(self) -> frozenset[str]:
        """Keys of the objects that currently have a running loop."""
        return frozenset(self._wakeups)

    def observe(self, key: str, body: Mapping[str, Any], event_type: str | None) -> None:
        """Feed one watch event into the loop of its object.

        The first event for a key starts its loop and later events wake it
        with the newest body. A ``DELETED`` event stops the loop.

        Args:
            key: Object name.
            body: Object as carried by the event.
            event_type: Watch event type, ``None`` for the initial listing.
        """
        if event_type == "DELETED":
            self._bodies.pop(key, None)
            entry = self._loops.pop(key, None)
            if entry is not None:
                entry[1].set()
            return
        self._bodies[key] = body
        if key in self._loops:
            self.notify(key)
            return
        stop = LoopStop()
        task = asyncio.create_task(self.run(key, body, stop), name=f"{self.kind}/{key}")
        self._loops[key] = (task, stop)
        task.add_done_callback(lambda done: self._forget(key, done))

    async def shutdown(self) -> None:
        """Stop every loop and wait for them to finish."""
        loops = list(self._loops.values())
        for _, stop in loops:
            stop.set()
        await asyncio.gather(*(task for task, _ in loops))

    def _forget(self, key: str, task: asyncio.Task[None]) -> None:
        entry = self._loops.get(key)
        if entry is not None and entry[0] is task:
            del self._loops[key]

    async def reconcile_once(self, key: str, body: Mapping[str, Any]) -> Action:
        """Run one reconcile pass and translate its outcome into an action.

        Exceptions are logged and mapped through error_policy, never raised.
        """
        with structlog.contextvars.bound_contextvars(kind=self.kind, name=key):
            try:
                with reconcile_span(self._tracer, self.kind, key) as span:
                    action = await self.reconciler.reconcile(body)
                    span.set_attribute(ATTR_REQUEUE_AFTER, action.requeue_after)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                action = error_policy(e)
                self._log.error(
                    "reconcile_failed",
                    name=key,
                    error=str(e),
                    error_type=type(e).__name__,
                    requeue_after=action.requeue_after,
                )
                return action
        self._log.debug("reconcile_succeeded", name=key, requeue_after=action.requeue_after)
        return action

    async def run(self, key: str, body: Mapping[str, Any], stopped: StopFlag) -> None:
        """Reconcile an object until it is deleted or the operator stops.

        Each pass sees the newest body observed for the key, falling back to
        the one the loop was started with.

        Args:
            key: Object name.
            body: Object as first observed.
            stopped: Flag raised when the loop must end.
        """
        wakeup = asyncio.Event()
        self._wakeups[key] = wakeup
        self._log.info("object_loop_started", name=key)
        try:
            while not stopped:
                wakeup.clear()
                action = await self.reconcile_once(key, self._bodies.get(key, body))
                await self._sleep(wakeup, stopped, action.requeue_after)
        finally:
            if self._wakeups.get(key) is wakeup:
                del self._wakeups[key]
            self._log.info("object_loop_stopped", name=key)

    @staticmethod
    async def _sleep(wakeup: asyncio.Event, stopped: StopFlag, delay: float) -> None:
        if stopped:
            return
        waiters = {
            asyncio.ensure_future(wakeup.wait()),
            asyncio.ensure_future(stopped.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()


def _register(
    registry: kopf.OperatorRegistry,
    controller: Controller,
    group: str,
    version: str,
    plural: str,
    labels: Mapping[str, str] | None = None,
) -> None:
    selector: dict[str, Any] = {}
    if labels:
        selector["labels"] = dict(labels)

    async def watch(name: str | None, body: kopf.Body, event: Mapping[str, Any], **_: Any) -> None:
        if name:
            controller.observe(name, body, event.get("type"))

    async def cleanup(**_: Any) -> None:
        await controller.shutdown()

    kopf.on.event(group, version, plural, registry=registry, id=f"{plural}-watch", **selector)(watch)
    kopf.on.cleanup(registry=registry, id=f"{plural}-cleanup")(cleanup)


def register_controllers(
    registry: kopf.OperatorRegistry,
    *,
    managed_users: Reconciler,
    csrs: Reconciler,
    operator_name: str,
) -> tuple[Controller, Controller]:
    """Register the ManagedUser and CSR controllers with kopf.

    Args:
        registry: Registry passed to ``kopf.operator``.
        managed_users: Reconciler for every ManagedUser.
        csrs: Reconciler for CSRs labelled as managed by this operator.
        operator_name: Value of the managed-by label on operator-created CSRs.

    Returns:
        The ManagedUser and CSR controllers.
    """
    user_controller = Controller(KIND, managed_users)
    csr_controller = Controller(CSR_KIND, csrs)
    _register(registry, user_controller, GROUP, VERSION, PLURAL)
    _register(
        registry,
        csr_controller,
        CSR_GROUP,
        CSR_VERSION,
        CSR_PLURAL,
        labels={MANAGED_BY_LABEL: operator_name},
    )
    return user_controller, csr_controller


def configure_settings(settings: kopf.OperatorSettings) -> None:
    """Operator-wide kopf settings applied at startup."""
    settings.posting.enabled = False
    settings.watching.server_timeout = 60


def register_startup(registry: kopf.OperatorRegistry) -> None:
    """Register the kopf settings hook and cluster login."""

    def startup(settings: kopf.OperatorSettings, **_: Any) -> None:
        configure_settings(settings)

    @kopf.on.login(registry=registry)
    def login(**kwargs: Any) -> kopf.ConnectionInfo | None:
        return kopf.login_via_client(**kwargs)

    kopf.on.startup(registry=registry)(startup)


__all__ = [
    "CSR_GROUP",
    "CSR_KIND",
    "CSR_PLURAL",
    "CSR_VERSION",
    "Action",
    "Controller",
    "LoopStop",
    "Reconciler",
    "error_policy",
    "register_controllers",
    "register_startup",
]
