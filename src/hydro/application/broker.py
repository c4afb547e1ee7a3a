"""Broker orchestrator implementing the service broker operations.

The broker owns no mutable state. Every state-changing call takes the
per-instance lock, consults the registry and the operation tracker on a worker
thread, and when provisioner work is needed registers an operation and queues
a job on the dispatcher. The registry is only ever changed while the instance
lock is held, by the request handlers and by the jobs' settle callbacks.
"""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from hydro.application.dispatcher import OperationDispatcher, OperationJob
from hydro.application.validation import (
    check_update_parameters,
    validate_parameters,
    validate_update_values,
)
from hydro.domain.catalog import Catalog, CatalogResponse
from hydro.domain.exceptions import (
    AlreadyProvisionedError,
    BindingExistsError,
    BindingInProgressError,
    BindingNotFoundError,
    BrokerError,
    BrokerInternalError,
    DeprovisionInProgressError,
    DuplicateError,
    ForbiddenError,
    InstanceNotFoundError,
    InvariantViolationError,
    NotFoundError,
    OperationInProgressError,
    OperationNotFoundError,
    PlanNotFoundError,
    PlanUpdateNotPossibleError,
    ProvisionInProgressError,
    UpdateInProgressError,
)
from hydro.domain.instance import (
    BindingState,
    BindInstance,
    Context,
    InstanceState,
    ServiceInstance,
)
from hydro.domain.messages import (
    BindRequest,
    BindResponse,
    DeprovisionResponse,
    LastOperationRequest,
    LastOperationResponse,
    ProvisionRequest,
    ProvisionResponse,
    ServiceInstanceResponse,
    UnbindResponse,
    UpdateRequest,
    UpdateResponse,
)
from hydro.domain.operation import OperationKind, OperationRecord, OperationState
from hydro.domain.ports.authorization_port import AuthorizationPort
from hydro.domain.ports.logging_port import LoggingPort
from hydro.domain.ports.provisioner_port import ProvisionerPort
from hydro.domain.ports.registry_port import InstanceRegistryPort
from hydro.domain.ports.tracker_port import OperationTrackerPort
from hydro.infrastructure.adapters.authorization_adapter import AllowAllAuthorizer
from hydro.infrastructure.adapters.logging_adapter import LoggingAdapter
from hydro.infrastructure.locking import AsyncKeyedLock

RECOVERY_DESCRIPTION = "interrupted by broker restart"

_IN_PROGRESS_BY_KIND = {
    OperationKind.PROVISION: ProvisionInProgressError,
    OperationKind.DEPROVISION: DeprovisionInProgressError,
    OperationKind.UPDATE: UpdateInProgressError,
    OperationKind.BIND: BindingInProgressError,
    OperationKind.UNBIND: BindingInProgressError,
}

_IN_PROGRESS_BY_STATE = {
    InstanceState.PROVISIONING: ProvisionInProgressError,
    InstanceState.UPDATING: UpdateInProgressError,
    InstanceState.DEPROVISIONING: DeprovisionInProgressError,
}


@dataclass
class _Dispatched:
    """Work registered by the synchronous portion of a call."""

    token: str
    job: Optional[OperationJob]
    created: bool = True
    pending: bool = False
    abandon: Optional[Callable[[], None]] = None


class Broker:
    """
    Coordinates the registry, the operation tracker and the provisioner.

    A single instance is shared by all concurrent requests. ``timeout`` on
    state-changing calls bounds waiting for the instance lock. Once the lock
    is held the call finishes validating and registering even if the caller
    goes away, and cancelling the caller never cancels the provisioner call;
    its outcome is still recorded for polling.

    Registry and tracker calls made by the async operations run on worker
    threads. The read operations are plain methods that call the stores
    directly.
    """

    def __init__(
        self,
        catalog: Catalog,
        registry: InstanceRegistryPort,
        tracker: OperationTrackerPort,
        provisioner: ProvisionerPort,
        dispatcher: OperationDispatcher,
        locks: Optional[AsyncKeyedLock] = None,
        authorizer: Optional[AuthorizationPort] = None,
        logger: Optional[LoggingPort] = None,
    ) -> None:
        self._catalog = catalog
        self._registry = registry
        self._tracker = tracker
        self._provisioner = provisioner
        self._dispatcher = dispatcher
        self._locks = locks or AsyncKeyedLock()
        self._authorizer = authorizer or AllowAllAuthorizer()
        self._logger = logger or LoggingAdapter("hydro.broker")

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def catalog(self) -> CatalogResponse:
        return self._catalog.to_response()

    def get_service_instance(self, instance_id: str) -> ServiceInstance:
        return self._registry.get_instance(instance_id)

    def get_bind_instance(self, binding_id: str) -> BindInstance:
        binding = self._registry.get_binding(binding_id)
        try:
            self._registry.get_instance(binding.instance_id)
        except InstanceNotFoundError as e:
            self._logger.error(
                "Binding references a missing instance",
                binding_id=binding_id,
                instance_id=binding.instance_id,
            )
            raise InvariantViolationError(
                f"binding {binding_id} references missing instance {binding.instance_id}",
                {"binding_id": binding_id, "instance_id": binding.instance_id},
            ) from e
        return binding

    def fetch_service_instance(self, instance_id: str) -> ServiceInstanceResponse:
        """Return the published view of an instance once it has been provisioned."""
        instance = self._registry.get_instance(instance_id)
        if instance.state is InstanceState.PROVISIONING:
            raise ProvisionInProgressError(
                f"service instance {instance_id} is being provisioned",
                {"instance_id": instance_id},
            )
        return ServiceInstanceResponse(
            service_id=instance.service_id,
            plan_id=instance.plan_id,
            dashboard_url=instance.dashboard_url,
            parameters=instance.parameters,
        )

    def fetch_bind_instance(self, instance_id: str, binding_id: str) -> BindResponse:
        """Return the credentials of a bound binding."""
        binding = self._registry.get_binding(binding_id)
        if binding.instance_id != instance_id:
            raise BindingNotFoundError(binding_id)
        if binding.state is not BindingState.BOUND:
            raise BindingInProgressError(
                f"binding {binding_id} is {binding.state.value}",
                {"binding_id": binding_id, "state": binding.state.value},
            )
        return BindResponse(credentials=binding.credentials)

    def last_operation(
        self, instance_id: str, request: Optional[LastOperationRequest] = None
    ) -> LastOperationResponse:
        """
        Report the status of an operation on an instance.

        Without an operation token the most recent operation on the instance
        is reported. A token issued for another instance is treated as unknown.

        :raises OperationNotFoundError: when there is nothing to report; the
            client should stop polling.
        """
        token = request.operation if request is not None else None
        if token:
            record = self._tracker.status(token)
            if record.instance_id != instance_id:
                raise OperationNotFoundError(token)
        else:
            record = self._tracker.latest_for(instance_id)
            if record is None:
                raise OperationNotFoundError(
                    instance_id, f"no operation recorded for service instance {instance_id}"
                )
        return LastOperationResponse(state=record.state.value, description=record.description or None)

    # ------------------------------------------------------------------
    # Provision
    # ------------------------------------------------------------------

    async def provision(
        self,
        instance_id: str,
        request: ProvisionRequest,
        accepts_incomplete: bool = False,
        timeout: Optional[float] = None,
        user: Optional[str] = None,
    ) -> ProvisionResponse:
        _, plan = self._catalog.get_plan(request.service_id, request.plan_id)
        self._authorize("provision", request.context, user)
        validate_parameters(plan.schemas.create_parameters, request.parameters, "provision")

        def prepare() -> Union[ProvisionResponse, _Dispatched]:
            existing = self._find_instance(instance_id)
            if existing is not None:
                return self._provision_existing(existing, request)

            self._dispatcher.ensure_running()
            instance = ServiceInstance(
                id=instance_id,
                service_id=request.service_id,
                plan_id=request.plan_id,
                context=request.context,
                parameters=request.parameters,
                state=InstanceState.PROVISIONING,
            )
            token = self._begin(instance_id, OperationKind.PROVISION)
            with self._registering(token, lambda: self._revert_provision(instance_id)):
                self._registry.put_instance(instance)
            snapshot = instance.model_copy(deep=True)
            return self._submit(
                token,
                instance_id,
                OperationKind.PROVISION,
                lambda: self._provisioner.create(snapshot),
                lambda url: self._provisioned(instance_id, url),
                lambda: self._provision_failed(instance_id),
            )

        outcome = await self._guarded(instance_id, prepare, timeout)
        if isinstance(outcome, ProvisionResponse):
            return outcome
        if accepts_incomplete:
            return ProvisionResponse(operation=outcome.token)
        return ProvisionResponse(dashboard_url=await self._wait(outcome))

    def _provision_existing(self, existing: ServiceInstance, request: ProvisionRequest) -> ProvisionResponse:
        if existing.state is InstanceState.PROVISIONED:
            if existing.matches(request.service_id, request.plan_id, request.parameters):
                self._logger.info("Provision is idempotent", instance_id=existing.id)
                return ProvisionResponse(dashboard_url=existing.dashboard_url)
            raise AlreadyProvisionedError(
                f"service instance {existing.id} already exists with different attributes",
                {"instance_id": existing.id},
            )
        raise self._state_error(existing)

    def _provisioned(self, instance_id: str, dashboard_url: Optional[str]) -> str:
        def mutate(instance: ServiceInstance) -> ServiceInstance:
            instance.transition_to(InstanceState.PROVISIONED)
            instance.dashboard_url = dashboard_url
            return instance

        self._registry.update_instance(instance_id, mutate)
        return "service instance provisioned"

    def _provision_failed(self, instance_id: str) -> None:
        instance = self._registry.get_instance(instance_id)
        instance.transition_to(InstanceState.ABSENT)
        self._registry.delete_instance(instance_id)

    def _revert_provision(self, instance_id: str) -> None:
        if self._find_instance(instance_id) is not None:
            self._provision_failed(instance_id)

    # ------------------------------------------------------------------
    # Deprovision
    # ------------------------------------------------------------------

    async def deprovision(
        self,
        instance_id: str,
        accepts_incomplete: bool = False,
        timeout: Optional[float] = None,
        unbind_all: bool = False,
        user: Optional[str] = None,
    ) -> DeprovisionResponse:
        """
        Destroy an instance.

        :param unbind_all: Unbind every remaining binding before destroying,
                           instead of rejecting with BindingExistsError.
        """

        def prepare() -> _Dispatched:
            instance = self._registry.get_instance(instance_id)
            self._authorize("deprovision", instance.context, user)
            if instance.state is not InstanceState.PROVISIONED:
                raise self._state_error(instance)
            if instance.binding_ids and not unbind_all:
                raise BindingExistsError(
                    f"service instance {instance_id} still has {len(instance.binding_ids)} binding(s)",
                    {"instance_id": instance_id, "binding_ids": sorted(instance.binding_ids)},
                )

            self._dispatcher.ensure_running()
            bindings = [self._registry.get_binding(binding_id) for binding_id in sorted(instance.binding_ids)]
            token = self._begin(instance_id, OperationKind.DEPROVISION)
            with self._registering(token, lambda: self._revert_deprovision(instance_id, bindings)):
                for binding in bindings:
                    self._registry.update_binding(binding.id, _transition_binding(BindingState.UNBINDING))
                self._registry.update_instance(instance_id, _transition_instance(InstanceState.DEPROVISIONING))

            unbound: list[str] = []

            async def work() -> None:
                for binding in bindings:
                    await self._provisioner.unbind(instance, binding)
                    unbound.append(binding.id)
                await self._provisioner.destroy(instance)

            return self._submit(
                token,
                instance_id,
                OperationKind.DEPROVISION,
                work,
                lambda _: self._deprovisioned(instance_id),
                lambda: self._deprovision_failed(instance_id, unbound),
            )

        outcome = await self._guarded(instance_id, prepare, timeout)
        if accepts_incomplete:
            return DeprovisionResponse(operation=outcome.token)
        await self._wait(outcome)
        return DeprovisionResponse()

    def _deprovisioned(self, instance_id: str) -> str:
        instance = self._registry.get_instance(instance_id)
        for binding_id in sorted(instance.binding_ids):
            self._remove_binding(binding_id)
        instance.transition_to(InstanceState.GONE)
        self._registry.delete_instance(instance_id)
        return "service instance deprovisioned"

    def _deprovision_failed(self, instance_id: str, unbound: Iterable[str]) -> None:
        unbound = set(unbound)
        instance = self._registry.get_instance(instance_id)
        for binding_id in sorted(instance.binding_ids):
            if binding_id in unbound:
                self._remove_binding(binding_id)
            elif self._registry.get_binding(binding_id).state is BindingState.UNBINDING:
                self._registry.update_binding(binding_id, _transition_binding(BindingState.BOUND))

        def mutate(current: ServiceInstance) -> ServiceInstance:
            current.binding_ids -= unbound
            current.transition_to(InstanceState.PROVISIONED)
            return current

        self._registry.update_instance(instance_id, mutate)

    def _revert_deprovision(self, instance_id: str, bindings: Iterable[BindInstance]) -> None:
        for binding in bindings:
            current = self._find_binding(binding.id)
            if current is not None and current.state is BindingState.UNBINDING:
                self._registry.update_binding(binding.id, _transition_binding(BindingState.BOUND))
        if self._registry.get_instance(instance_id).state is InstanceState.DEPROVISIONING:
            self._registry.update_instance(instance_id, _transition_instance(InstanceState.PROVISIONED))

    # ------------------------------------------------------------------
    # Bind
    # ------------------------------------------------------------------

    async def bind(
        self,
        instance_id: str,
        binding_id: str,
        request: BindRequest,
        accepts_incomplete: bool = False,
        timeout: Optional[float] = None,
        user: Optional[str] = None,
    ) -> tuple[BindResponse, bool]:
        """
        Create a binding.

        :return: The response and whether this call created the binding.
                 Repeating an identical bind returns ``created=False``; while
                 the first one is still running, later callers share its
                 outcome (or its operation token when accepting incomplete).
        """
        _, plan = self._catalog.get_plan(request.service_id, request.plan_id)
        validate_parameters(plan.schemas.bind_parameters, request.parameters, "bind")

        def prepare() -> Union[BindResponse, _Dispatched]:
            instance = self._registry.get_instance(instance_id)
            self._authorize("bind", instance.context, user)
            if instance.state is not InstanceState.PROVISIONED:
                raise self._state_error(instance)

            existing = self._find_binding(binding_id)
            if existing is not None:
                return self._bind_existing(instance_id, existing, request)

            self._dispatcher.ensure_running()
            binding = BindInstance(
                id=binding_id,
                instance_id=instance_id,
                parameters=request.parameters,
                state=BindingState.BINDING,
                app_guid=request.effective_app_guid,
                route=request.bind_resource.route,
            )
            token = self._begin(instance_id, OperationKind.BIND, binding_id)
            with self._registering(token, lambda: self._revert_bind(instance_id, binding_id)):
                try:
                    self._registry.put_binding(binding)
                except DuplicateError as e:
                    raise BindingExistsError(e.message, e.details) from e
                self._registry.update_instance(instance_id, _add_binding(binding_id))
            instance_snapshot = instance.model_copy(deep=True)
            binding_snapshot = binding.model_copy(deep=True)
            return self._submit(
                token,
                instance_id,
                OperationKind.BIND,
                lambda: self._provisioner.bind(instance_snapshot, binding_snapshot),
                lambda credentials: self._bound(binding_id, credentials),
                lambda: self._bind_failed(instance_id, binding_id),
            )

        outcome = await self._guarded(instance_id, prepare, timeout)
        if isinstance(outcome, BindResponse):
            return outcome, False
        if accepts_incomplete:
            return BindResponse(operation=outcome.token), outcome.created
        credentials = await self._wait(outcome)
        return BindResponse(credentials=credentials), outcome.created

    def _bind_existing(
        self, instance_id: str, existing: BindInstance, request: BindRequest
    ) -> Union[BindResponse, _Dispatched]:
        if not existing.matches(instance_id, request.parameters):
            raise BindingExistsError(
                f"binding {existing.id} already exists with different attributes",
                {"binding_id": existing.id, "instance_id": existing.instance_id},
            )
        if existing.state is BindingState.BOUND:
            self._logger.info("Bind is idempotent", instance_id=instance_id, binding_id=existing.id)
            return BindResponse(credentials=existing.credentials)
        if existing.state is BindingState.BINDING:
            active = self._tracker.active_for(instance_id)
            if active is not None and active.kind is OperationKind.BIND and active.binding_id == existing.id:
                self._logger.info("Joining in-flight bind", binding_id=existing.id, token=active.token)
                return _Dispatched(active.token, self._dispatcher.get(active.token), created=False)
        raise BindingInProgressError(
            f"binding {existing.id} is {existing.state.value}",
            {"binding_id": existing.id, "state": existing.state.value},
        )

    def _bound(self, binding_id: str, credentials: Optional[dict[str, Any]]) -> str:
        def mutate(binding: BindInstance) -> BindInstance:
            binding.transition_to(BindingState.BOUND)
            binding.credentials = credentials or {}
            return binding

        self._registry.update_binding(binding_id, mutate)
        return "binding created"

    def _bind_failed(self, instance_id: str, binding_id: str) -> None:
        binding = self._registry.get_binding(binding_id)
        binding.transition_to(BindingState.ABSENT)
        self._registry.delete_binding(binding_id)
        self._registry.update_instance(instance_id, _discard_binding(binding_id))

    def _revert_bind(self, instance_id: str, binding_id: str) -> None:
        current = self._find_binding(binding_id)
        if current is None:
            self._registry.update_instance(instance_id, _discard_binding(binding_id))
        elif current.instance_id == instance_id and current.state is BindingState.BINDING:
            self._bind_failed(instance_id, binding_id)

    # ------------------------------------------------------------------
    # Unbind
    # ------------------------------------------------------------------

    async def unbind(
        self,
        instance_id: str,
        binding_id: str,
        accepts_incomplete: bool = False,
        timeout: Optional[float] = None,
        user: Optional[str] = None,
    ) -> UnbindResponse:
        def prepare() -> _Dispatched:
            instance = self._registry.get_instance(instance_id)
            self._authorize("unbind", instance.context, user)
            binding = self._registry.get_binding(binding_id)
            if binding.instance_id != instance_id:
                raise BindingNotFoundError(binding_id)
            if instance.state is InstanceState.DEPROVISIONING:
                raise self._state_error(instance)
            if binding.state is not BindingState.BOUND:
                raise BindingInProgressError(
                    f"binding {binding_id} is {binding.state.value}",
                    {"binding_id": binding_id, "state": binding.state.value},
                )

            self._dispatcher.ensure_running()
            token = self._begin(instance_id, OperationKind.UNBIND, binding_id)
            with self._registering(token, lambda: self._revert_unbind(binding_id)):
                self._registry.update_binding(binding_id, _transition_binding(BindingState.UNBINDING))
            return self._submit(
                token,
                instance_id,
                OperationKind.UNBIND,
                lambda: self._provisioner.unbind(instance, binding),
                lambda _: self._unbound(instance_id, binding_id),
                lambda: self._unbind_failed(binding_id),
            )

        outcome = await self._guarded(instance_id, prepare, timeout)
        if accepts_incomplete:
            return UnbindResponse(operation=outcome.token)
        await self._wait(outcome)
        return UnbindResponse()

    def _unbound(self, instance_id: str, binding_id: str) -> str:
        self._remove_binding(binding_id)
        self._registry.update_instance(instance_id, _discard_binding(binding_id))
        return "binding removed"

    def _unbind_failed(self, binding_id: str) -> None:
        self._registry.update_binding(binding_id, _transition_binding(BindingState.BOUND))

    def _revert_unbind(self, binding_id: str) -> None:
        current = self._find_binding(binding_id)
        if current is not None and current.state is BindingState.UNBINDING:
            self._unbind_failed(binding_id)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self,
        instance_id: str,
        request: UpdateRequest,
        accepts_incomplete: bool = False,
        timeout: Optional[float] = None,
        user: Optional[str] = None,
    ) -> UpdateResponse:
        """
        Change the plan and/or parameters of an instance.

        The target plan, the parameter names and the plan transition are
        checked in that order before the provisioner is involved. On failure
        the instance keeps its previous plan and parameters.
        """

        def prepare() -> Union[UpdateResponse, _Dispatched]:
            instance = self._registry.get_instance(instance_id)
            self._authorize("update", instance.context, user)
            if instance.state is not InstanceState.PROVISIONED:
                raise self._state_error(instance)

            target_plan_id = request.plan_id or instance.plan_id
            service = self._catalog.get_service(instance.service_id)
            plan = service.get_plan(target_plan_id)
            if plan is None:
                raise PlanNotFoundError(
                    f"plan {target_plan_id} not found in service {service.id}",
                    {"service_id": service.id, "plan_id": target_plan_id},
                )
            check_update_parameters(plan, request.parameters)
            if not self._catalog.can_update(service.id, instance.plan_id, target_plan_id):
                raise PlanUpdateNotPossibleError(
                    f"plan {instance.plan_id} cannot be updated to {target_plan_id}",
                    {"from_plan_id": instance.plan_id, "to_plan_id": target_plan_id},
                )
            validate_update_values(plan, request.parameters)

            parameters = {**instance.parameters, **request.parameters}
            if target_plan_id == instance.plan_id and parameters == instance.parameters:
                self._logger.info("Update changes nothing", instance_id=instance_id)
                return UpdateResponse()

            self._dispatcher.ensure_running()
            token = self._begin(instance_id, OperationKind.UPDATE)

            def mutate(current: ServiceInstance) -> ServiceInstance:
                current.begin_update(target_plan_id, parameters)
                return current

            with self._registering(token, lambda: self._revert_update(instance_id)):
                updated = self._registry.update_instance(instance_id, mutate)
            return self._submit(
                token,
                instance_id,
                OperationKind.UPDATE,
                lambda: self._provisioner.reconfigure(updated, plan),
                lambda _: self._update_finished(instance_id, True),
                lambda: self._update_finished(instance_id, False),
            )

        outcome = await self._guarded(instance_id, prepare, timeout)
        if isinstance(outcome, UpdateResponse):
            return outcome
        if accepts_incomplete:
            return UpdateResponse(operation=outcome.token)
        await self._wait(outcome)
        return UpdateResponse()

    def _update_finished(self, instance_id: str, succeeded: bool) -> str:
        def mutate(instance: ServiceInstance) -> ServiceInstance:
            instance.finish_update(succeeded)
            return instance

        self._registry.update_instance(instance_id, mutate)
        return "service instance updated"

    def _revert_update(self, instance_id: str) -> None:
        if self._registry.get_instance(instance_id).state is InstanceState.UPDATING:
            self._update_finished(instance_id, False)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_interrupted(self) -> int:
        """
        Fail every operation left in progress by a previous process.

        The registry gets the same failure transition a provisioner error
        would have produced. Operations owned by this process's dispatcher
        are left alone.

        :return: Number of operations failed.
        """
        recovered = 0
        for record in await self._offload(self._tracker.list_active):
            if self._dispatcher.is_inflight(record.token):
                continue
            async with self._locks.hold(record.instance_id):
                await self._offload(self._recover, record)
            recovered += 1
            self._logger.warning(
                "Failed interrupted operation",
                token=record.token,
                kind=record.kind.value,
                instance_id=record.instance_id,
            )
        return recovered

    def _recover(self, record: OperationRecord) -> None:
        try:
            self._rollback(record)
        except NotFoundError as e:
            self._logger.warning(
                "Interrupted operation has no registry record",
                token=record.token,
                kind=record.kind.value,
                error=str(e),
            )
        self._tracker.complete(record.token, OperationState.FAILED, RECOVERY_DESCRIPTION)

    def _rollback(self, record: OperationRecord) -> None:
        if record.kind is OperationKind.PROVISION:
            self._provision_failed(record.instance_id)
        elif record.kind is OperationKind.DEPROVISION:
            self._deprovision_failed(record.instance_id, ())
        elif record.kind is OperationKind.UPDATE:
            self._update_finished(record.instance_id, False)
        elif record.kind is OperationKind.BIND:
            self._bind_failed(record.instance_id, record.binding_id)
        elif record.kind is OperationKind.UNBIND:
            self._unbind_failed(record.binding_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guarded(self, instance_id: str, prepare: Callable[[], Any], timeout: Optional[float]) -> Any:
        """
        Run the synchronous portion of a call under the instance lock.

        ``prepare`` runs on a worker thread. Only waiting for the lock is
        bounded by ``timeout``; past that point the locked section runs in its
        own task, so registered work is always queued and the lock released.
        """
        if timeout is None:
            await self._locks.acquire(instance_id)
        else:
            await asyncio.wait_for(self._locks.acquire(instance_id), timeout)
        locked = asyncio.create_task(self._run_locked(instance_id, prepare))
        return await asyncio.shield(locked)

    async def _run_locked(self, instance_id: str, prepare: Callable[[], Any]) -> Any:
        try:
            outcome = await self._offload(prepare)
            if isinstance(outcome, _Dispatched) and outcome.pending:
                await self._queue(outcome)
            return outcome
        finally:
            self._locks.release(instance_id)

    async def _queue(self, dispatched: _Dispatched) -> None:
        try:
            self._dispatcher.submit(dispatched.job)
        except BrokerInternalError as e:
            await self._offload(self._abandon, dispatched, e)
            raise
        dispatched.pending = False

    def _abandon(self, dispatched: _Dispatched, error: BaseException) -> None:
        """Fail a registered operation whose job could not be queued."""
        try:
            dispatched.abandon()
        except Exception as e:
            self._logger.error("Reverting unqueued operation failed", token=dispatched.token, error=str(e))
        self._tracker.complete(dispatched.token, OperationState.FAILED, str(error))

    async def _offload(self, call: Callable[..., Any], *args: Any) -> Any:
        """Run blocking registry and tracker work on a worker thread."""
        try:
            return await asyncio.to_thread(call, *args)
        except (BrokerError, BrokerInternalError):
            raise
        except Exception as e:
            self._logger.error("Storage call failed", error=str(e), error_type=type(e).__name__)
            raise BrokerInternalError(f"storage failure: {e}", {"cause": type(e).__name__}) from e

    async def _wait(self, dispatched: _Dispatched) -> Any:
        if dispatched.job is None or dispatched.job.future is None:
            record = await self._offload(self._tracker.status, dispatched.token)
            raise _IN_PROGRESS_BY_KIND[record.kind](
                f"{record.kind.value} operation {record.token} is not owned by this broker",
                {"token": record.token},
                operation=record,
            )
        outcome = await asyncio.shield(dispatched.job.future)
        return outcome.unwrap()

    def _submit(
        self,
        token: str,
        instance_id: str,
        kind: OperationKind,
        work: Callable[[], Any],
        on_success: Callable[[Any], str],
        on_failure: Callable[[], None],
    ) -> _Dispatched:
        """Build the job for a registered operation; ``_guarded`` queues it."""

        def apply(result: Any, error: Optional[BaseException]) -> Optional[BaseException]:
            try:
                if error is None:
                    description = on_success(result)
                else:
                    on_failure()
                    description = str(error)
            except Exception as e:
                self._logger.error(
                    "Registry left inconsistent by operation",
                    token=token,
                    kind=kind.value,
                    instance_id=instance_id,
                    error=str(e),
                )
                violation = InvariantViolationError(
                    f"{kind.value} {token} could not be applied: {e}",
                    {"token": token, "instance_id": instance_id},
                )
                self._tracker.complete(token, OperationState.FAILED, violation.message)
                return violation

            state = OperationState.SUCCEEDED if error is None else OperationState.FAILED
            self._tracker.complete(token, state, description)
            return error

        async def settle(job: OperationJob, result: Any, error: Optional[BaseException]) -> Optional[BaseException]:
            async with self._locks.hold(instance_id):
                return await asyncio.to_thread(apply, result, error)

        job = OperationJob(token, instance_id, kind, work, settle)
        return _Dispatched(token, job, pending=True, abandon=on_failure)

    def _begin(self, instance_id: str, kind: OperationKind, binding_id: Optional[str] = None) -> str:
        try:
            return self._tracker.begin(instance_id, kind, binding_id)
        except OperationInProgressError as e:
            active = e.operation
            if active is None:
                raise
            raise _IN_PROGRESS_BY_KIND[active.kind](
                e.message, e.details, operation=active
            ) from e

    @contextmanager
    def _registering(self, token: str, revert: Callable[[], None]) -> Iterator[None]:
        """
        Fail the operation if recording its registry change raises.

        ``revert`` undoes whatever part of the change was already written, so
        the instance is left as it was before the call.
        """
        try:
            yield
        except Exception as e:
            self._logger.error("Registering operation failed", token=token, error=str(e))
            try:
                revert()
            except Exception as revert_error:
                self._logger.error("Reverting partial registration failed", token=token, error=str(revert_error))
            self._tracker.complete(token, OperationState.FAILED, str(e))
            raise

    def _state_error(self, instance: ServiceInstance) -> BrokerError:
        error_class = _IN_PROGRESS_BY_STATE.get(instance.state)
        if error_class is None:
            return InstanceNotFoundError(instance.id)
        return error_class(
            f"service instance {instance.id} is {instance.state.value}",
            {"instance_id": instance.id, "state": instance.state.value},
            operation=self._tracker.active_for(instance.id),
        )

    def _authorize(self, action: str, context: Context, user: Optional[str]) -> None:
        if not self._authorizer.authorize(action, context, user):
            self._logger.warning("Request denied", action=action, user=user, namespace=context.namespace)
            raise ForbiddenError(details={"action": action, "namespace": context.namespace})

    def _find_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        try:
            return self._registry.get_instance(instance_id)
        except InstanceNotFoundError:
            return None

    def _find_binding(self, binding_id: str) -> Optional[BindInstance]:
        try:
            return self._registry.get_binding(binding_id)
        except BindingNotFoundError:
            return None

    def _remove_binding(self, binding_id: str) -> None:
        binding = self._registry.get_binding(binding_id)
        binding.transition_to(BindingState.GONE)
        self._registry.delete_binding(binding_id)


def _transition_instance(state: InstanceState) -> Callable[[ServiceInstance], ServiceInstance]:
    def mutate(instance: ServiceInstance) -> ServiceInstance:
        instance.transition_to(state)
        return instance

    return mutate


def _transition_binding(state: BindingState) -> Callable[[BindInstance], BindInstance]:
    def mutate(binding: BindInstance) -> BindInstance:
        binding.transition_to(state)
        return binding

    return mutate


def _add_binding(binding_id: str) -> Callable[[ServiceInstance], ServiceInstance]:
    def mutate(instance: ServiceInstance) -> ServiceInstance:
        instance.binding_ids.add(binding_id)
        return instance

    return mutate


def _discard_binding(binding_id: str) -> Callable[[ServiceInstance], ServiceInstance]:
    def mutate(instance: ServiceInstance) -> ServiceInstance:
        instance.binding_ids.discard(binding_id)
        return instance

    return mutate
