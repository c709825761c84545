"""
Orchestration controller — drives each publisher unit through its lifecycle.

Create path (strictly sequential within a unit)::

    CreatePublisher -> IssueToken -> PutSecret -> Launch -> WaitOnline -> Registration

Destroy path::

    Terminate (confirmed gone) -> DeletePublisher -> DeleteSecret

Units run concurrently on a thread pool; they share nothing but the
read-only desired set and the state store, which serialises its own writes.
A failure in one unit is recorded against its key and never stops the
others.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from provisioner.config import ProvisionerConfig
from provisioner.errors import (
    OperationCancelled,
    PollTimeout,
    ProvisionerError,
    PublisherNotFound,
    RegistrationFailed,
    TenantError,
    TerminationError,
    TokenConsumedError,
)
from provisioner.models import (
    INSTANCE_TERMINATED,
    MANAGEMENT_ONLINE,
    OUTCOME_CONNECTED,
    OUTCOME_DESTROYED,
    OUTCOME_FAILED,
    OUTCOME_UNCHANGED,
    STEP_CREATE_PUBLISHER,
    STEP_DELETE_PUBLISHER,
    STEP_DELETE_SECRET,
    STEP_ISSUE_TOKEN,
    STEP_LAUNCH,
    STEP_PUT_SECRET,
    STEP_REGISTER,
    STEP_TERMINATE,
    STEP_WAIT_ONLINE,
    DriftWarning,
    Plan,
    PublisherUnit,
    TokenRef,
    UnitRecord,
    UnitResult,
)
from provisioner.plan import diff, placement_index, resolve_units
from provisioner.polling import ReadinessPoller, Waiter, poll_until
from provisioner.registration import RegistrationExecutor
from provisioner.state import StateLock, StateStore

logger = logging.getLogger(__name__)


def secret_path(app: str, display_name: str) -> str:
    """Secret-store location of a publisher's registration token."""
    return f"/{app}/publishers/{display_name}/registration-token"


class _UnitFailure(Exception):
    """Internal: carries the step and diagnostic of a failed pipeline step."""

    def __init__(self, step: str, reason: str, diagnostic: str = "") -> None:
        super().__init__(reason)
        self.step = step
        self.reason = reason
        self.diagnostic = diagnostic


@dataclass
class ReconcileReport:
    plan: Plan
    results: dict[str, UnitResult] = field(default_factory=dict)

    @property
    def failed(self) -> dict[str, UnitResult]:
        return {k: r for k, r in self.results.items() if r.failed}

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class UnitStatus:
    key: str
    display_name: str
    outcome: str
    publisher_status: str = "Unknown"
    instance_state: str = "Unknown"
    ping_status: str = "Unknown"
    secret_present: bool | None = None


class Controller:
    """Reconciles recorded publisher units against the desired set.

    All collaborators are injected so tests can substitute fakes for any of
    them; see ``build_controller`` for the production wiring.
    ``before_apply`` runs once per reconcile that creates or replaces units,
    so provider-side setup never happens during ``plan`` or ``status``.
    """

    def __init__(
        self,
        config: ProvisionerConfig,
        tenant,
        secrets,
        compute,
        readiness: ReadinessPoller,
        executor: RegistrationExecutor,
        store: StateStore,
        lock: StateLock | None = None,
        waiter: Waiter | None = None,
        bootstrap_script: str = "",
        before_apply: Callable[[], None] | None = None,
    ) -> None:
        self.config = config
        self.tenant = tenant
        self.secrets = secrets
        self.compute = compute
        self.readiness = readiness
        self.executor = executor
        self.store = store
        self.lock = lock or StateLock(config.state_dir, timeout=config.lock_timeout)
        self.waiter = waiter or Waiter()
        self.bootstrap_script = bootstrap_script
        self.before_apply = before_apply

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def desired_units(self, current: Mapping[str, UnitRecord]) -> dict[str, PublisherUnit]:
        return resolve_units(
            self.config.keys,
            self.config.base_name,
            current,
            self.config.name_overrides,
        )

    def plan(self, replace: Iterable[str] = ()) -> Plan:
        """Compute the diff without touching anything."""
        current = self.store.load()
        return diff(current, self.desired_units(current), replace)

    # ------------------------------------------------------------------
    # Reconcile / replace / destroy
    # ------------------------------------------------------------------

    def reconcile(
        self,
        desired: Mapping[str, PublisherUnit] | None = None,
        replace: Iterable[str] = (),
    ) -> ReconcileReport:
        """Bring recorded state in line with *desired* (default: from config).

        The state lock is held from reading current state until every unit
        has committed its final record.
        """
        with self.lock:
            current = self.store.load()
            if desired is None:
                desired = self.desired_units(current)
            plan = diff(current, desired, replace)
            report = ReconcileReport(plan=plan)

            for key in plan.unchanged:
                report.results[key] = UnitResult(key=key, outcome=OUTCOME_UNCHANGED)
            for key in plan.failed:
                rec = current[key]
                report.results[key] = UnitResult(
                    key=key,
                    outcome=OUTCOME_FAILED,
                    step=rec.step,
                    reason=rec.reason or f"recorded as {rec.outcome}; replace to retry",
                )

            if plan.is_empty:
                logger.info("Nothing to do")
                return report

            if (plan.to_create or plan.to_replace) and self.before_apply is not None:
                self.before_apply()

            jobs: dict[str, Callable[[], UnitResult]] = {}
            for key in plan.to_destroy:
                jobs[key] = lambda rec=current[key]: self._destroy(rec)
            for key, unit in plan.to_replace.items():
                jobs[key] = lambda rec=current[key], u=unit: self._replace(rec, u)
            for key, unit in plan.to_create.items():
                jobs[key] = lambda u=unit: self._create(u)

            logger.info(
                "Applying plan: %d create, %d replace, %d destroy",
                len(plan.to_create), len(plan.to_replace), len(plan.to_destroy),
            )
            workers = max(1, min(self.config.max_parallel, len(jobs)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="unit") as pool:
                futures = {key: pool.submit(self._guarded, key, job) for key, job in jobs.items()}
                for key, future in futures.items():
                    report.results[key] = future.result()

        return report

    def replace_units(self, keys: Iterable[str]) -> ReconcileReport:
        """Destroy and recreate identity, token and instance for *keys*.

        Tokens are single-use, so an instance can only be replaced together
        with a fresh publisher identity.
        """
        return self.reconcile(replace=list(keys))

    def replace_unit(self, key: str) -> UnitResult:
        return self.replace_units([key]).results[key]

    def destroy_all(self) -> ReconcileReport:
        return self.reconcile(desired={})

    def _guarded(self, key: str, job: Callable[[], UnitResult]) -> UnitResult:
        try:
            return job()
        except Exception as exc:  # contain per-unit crashes
            logger.exception("Unit %s crashed", key)
            return UnitResult(key=key, outcome=OUTCOME_FAILED, step="internal", reason=str(exc))

    # ------------------------------------------------------------------
    # Per-unit pipelines
    # ------------------------------------------------------------------

    def _fail(self, record: UnitRecord, failure: _UnitFailure) -> UnitResult:
        record.outcome = OUTCOME_FAILED
        record.step = failure.step
        record.reason = failure.reason
        self.store.put(record)
        logger.warning("%s failed at %s: %s", record.key, failure.step, failure.reason)
        return UnitResult(
            key=record.key,
            outcome=OUTCOME_FAILED,
            step=failure.step,
            reason=failure.reason,
            diagnostic=failure.diagnostic,
        )

    def _step(self, step: str, fn: Callable, *args):
        """Run one pipeline step, translating errors into ``_UnitFailure``."""
        try:
            self.waiter.check()
            return fn(*args)
        except OperationCancelled as exc:
            raise _UnitFailure(step, "Cancelled") from exc
        except TenantError as exc:
            raise _UnitFailure(step, f"{type(exc).__name__}: {exc}", exc.body) from exc
        except ProvisionerError as exc:
            raise _UnitFailure(step, f"{type(exc).__name__}: {exc}") from exc

    def _create(self, unit: PublisherUnit) -> UnitResult:
        record = UnitRecord(key=unit.key, display_name=unit.display_name, ordinal=unit.ordinal)
        self.store.put(record)
        try:
            self._provision(record, unit)
        except _UnitFailure as failure:
            return self._fail(record, failure)
        return UnitResult(key=unit.key, outcome=OUTCOME_CONNECTED)

    def _provision(self, record: UnitRecord, unit: PublisherUnit) -> None:
        logger.info("Creating %s (%s)", unit.key, unit.display_name)

        identity = self._step(STEP_CREATE_PUBLISHER, self.tenant.create_publisher, unit.display_name)
        record.publisher_id = identity.publisher_id
        self.store.put(record)

        token = self._step(STEP_ISSUE_TOKEN, self.tenant.issue_token, identity.publisher_id)

        path = secret_path(self.config.app, unit.display_name)
        self._step(STEP_PUT_SECRET, self.secrets.put_secret, path, token.value)
        record.token = TokenRef(publisher_id=identity.publisher_id, secret_path=path)
        self.store.put(record)
        del token

        subnets = self.config.aws.subnet_ids
        subnet_id = subnets[placement_index(unit.ordinal, len(subnets))]
        instance = self._step(STEP_LAUNCH, self.compute.launch, unit, subnet_id, self.bootstrap_script)
        record.instance_id = instance.instance_id
        record.subnet_id = subnet_id
        self.store.put(record)

        settings = self.config.readiness
        status = self._step(
            STEP_WAIT_ONLINE, self.readiness.wait_online,
            instance.instance_id, settings.poll_interval, settings.max_attempts,
        )
        if status != MANAGEMENT_ONLINE:
            raise _UnitFailure(
                STEP_WAIT_ONLINE,
                f"TimedOut: no heartbeat from {instance.instance_id} after "
                f"{settings.max_attempts} attempts",
            )

        self._register(record)

        record.outcome = OUTCOME_CONNECTED
        record.step = None
        record.reason = None
        self.store.put(record)
        logger.info("%s connected (publisher %s, instance %s)",
                    unit.key, record.publisher_id, record.instance_id)

    def _register(self, record: UnitRecord) -> None:
        settings = self.config.registration
        try:
            self._step(
                STEP_REGISTER, self.executor.register,
                record.instance_id, record.token,
                settings.poll_interval, settings.max_attempts,
            )
        except _UnitFailure as failure:
            cause = failure.__cause__
            if isinstance(cause, TokenConsumedError):
                failure.reason = f"TokenConsumed: {cause}; replace the unit to issue a new token"
            elif isinstance(cause, RegistrationFailed):
                failure.reason = f"{cause.status}: {cause}"
                failure.diagnostic = "\n".join(
                    part for part in (cause.stdout, cause.stderr) if part
                )
            raise
        finally:
            # Token consumption must be recorded whatever happened.
            self.store.put(record)

    def _terminate_once(self, instance_id: str) -> str:
        instance = self.compute.describe(instance_id)
        if instance is not None and instance.state == INSTANCE_TERMINATED:
            return INSTANCE_TERMINATED
        # An instance the provider cannot see may still be coming up; only
        # terminate may declare it gone.
        return self.compute.terminate(instance_id)

    def _terminate_until_gone(self, instance_id: str) -> None:
        settings = self.config.termination
        try:
            poll_until(
                lambda: self._terminate_once(instance_id),
                lambda state: state == INSTANCE_TERMINATED,
                interval=settings.poll_interval,
                max_attempts=settings.max_attempts,
                waiter=self.waiter,
                description=f"terminate {instance_id}",
            )
        except PollTimeout as exc:
            raise TerminationError(
                f"{instance_id} still not terminated after {exc.attempts} attempts "
                f"(last state {exc.last_observed})"
            ) from exc

    def _destroy(self, record: UnitRecord) -> UnitResult:
        logger.info("Destroying %s (%s)", record.key, record.display_name)
        try:
            self._teardown(record)
        except _UnitFailure as failure:
            return self._fail(record, failure)
        self.store.remove(record.key)
        return UnitResult(key=record.key, outcome=OUTCOME_DESTROYED)

    def _teardown(self, record: UnitRecord) -> None:
        # The instance must be confirmed gone before the identity is deleted;
        # the tenant rejects deleting a publisher with a live connection.
        if record.instance_id:
            self._step(STEP_TERMINATE, self._terminate_until_gone, record.instance_id)
            record.instance_id = None
            self.store.put(record)

        if record.publisher_id:
            self._step(STEP_DELETE_PUBLISHER, self.tenant.delete_publisher, record.publisher_id)
            record.publisher_id = None
            self.store.put(record)

        if record.token:
            self._step(STEP_DELETE_SECRET, self.secrets.delete_secret, record.token.secret_path)
            record.token = None
            self.store.put(record)

    def _replace(self, record: UnitRecord, unit: PublisherUnit) -> UnitResult:
        result = self._destroy(record)
        if result.failed:
            return result
        return self._create(unit)

    # ------------------------------------------------------------------
    # Status and drift
    # ------------------------------------------------------------------

    def status(self) -> tuple[list[UnitStatus], list[DriftWarning]]:
        """Observe every recorded unit and flag broken 1:1:1:1 correspondence.

        Drift is only reported, never repaired.
        """
        statuses: list[UnitStatus] = []
        warnings: list[DriftWarning] = []

        for key, rec in sorted(self.store.load().items()):
            st = UnitStatus(key=key, display_name=rec.display_name, outcome=rec.outcome)

            if rec.publisher_id:
                try:
                    st.publisher_status = self.tenant.get_publisher(rec.publisher_id).status
                except PublisherNotFound:
                    st.publisher_status = "Missing"
                except ProvisionerError as exc:
                    logger.warning("Could not read publisher %s: %s", rec.publisher_id, exc)
            else:
                st.publisher_status = "None"

            if rec.instance_id:
                try:
                    instance = self.compute.describe(rec.instance_id)
                    st.instance_state = instance.state if instance else "Missing"
                    st.ping_status = self.readiness.observe(rec.instance_id)
                except ProvisionerError as exc:
                    logger.warning("Could not read instance %s: %s", rec.instance_id, exc)
            else:
                st.instance_state = "None"

            if rec.token:
                try:
                    st.secret_present = self.secrets.exists(rec.token.secret_path)
                except ProvisionerError as exc:
                    logger.warning("Could not check secret %s: %s", rec.token.secret_path, exc)

            statuses.append(st)
            if rec.outcome == OUTCOME_CONNECTED:
                warnings.extend(_drift_for(st))

        return statuses, warnings


def _drift_for(st: UnitStatus) -> list[DriftWarning]:
    out = []
    if st.publisher_status in ("Missing", "None"):
        out.append(DriftWarning(st.key, "publisher identity no longer exists in the tenant"))
    if st.instance_state in ("Missing", "None", INSTANCE_TERMINATED):
        out.append(DriftWarning(st.key, f"instance is {st.instance_state.lower()}"))
    if st.secret_present is False:
        out.append(DriftWarning(st.key, "registration token secret is missing"))
    return out


# ---------------------------------------------------------------------------
# Production wiring
# ---------------------------------------------------------------------------

def build_controller(
    config: ProvisionerConfig,
    cancel_event: threading.Event | None = None,
) -> Controller:
    """Wire real AWS and tenant clients from *config*."""
    from connectors.aws import (
        ComputeProvisioner,
        ManagementPlane,
        SecretStore,
        build_bootstrap_script,
        build_session,
    )
    from connectors.netskope import TenantClient

    waiter = Waiter(cancel_event)
    aws = config.aws

    operator = build_session(profile=aws.profile, region=aws.region)
    executor_session = build_session(
        profile=aws.profile,
        region=aws.region,
        role_arn=aws.executor_role_arn,
        session_name="npa-registration-executor",
    )

    management = ManagementPlane(operator)

    compute = ComputeProvisioner(
        operator,
        instance_type=aws.instance_type,
        security_group_ids=aws.security_group_ids,
        instance_profile=aws.instance_profile,
        root_volume_size=aws.root_volume_size,
        key_name=aws.key_name,
        ami_id=aws.ami_id,
        ami_name_filter=aws.ami_name_filter,
        ami_owner=aws.ami_owner,
        app=config.app,
        tags=aws.tags,
    )

    return Controller(
        config=config,
        tenant=TenantClient(base_url=config.tenant_url),
        secrets=SecretStore(operator, kms_key_id=aws.kms_key_id),
        compute=compute,
        readiness=ReadinessPoller(management, waiter),
        executor=RegistrationExecutor(
            SecretStore(executor_session, kms_key_id=aws.kms_key_id),
            ManagementPlane(executor_session),
            document_name=config.document_name,
            waiter=waiter,
        ),
        store=StateStore(config.state_dir),
        lock=StateLock(config.state_dir, timeout=config.lock_timeout),
        waiter=waiter,
        bootstrap_script=build_bootstrap_script(config.install_cloudwatch_agent),
        before_apply=lambda: management.ensure_registration_document(
            config.document_name, config.registration_command,
        ),
    )
