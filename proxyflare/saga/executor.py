"""
Saga executor module for ProxyFlare.

A saga is an ordered list of steps that together apply one user-level change to
DNS and the Caddyfile. Steps run strictly in order. When a step fails before the
proxy reload has succeeded, the compensations of the completed steps run in
reverse order; once the reload has succeeded nothing is undone and the failure
is reported as a state inconsistency.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from proxyflare.models.models import EntityType, OperationType, SagaResult
from proxyflare.saga.errors import CriticalRollbackFailure, StateInconsistencyError


@dataclass
class SagaContext:
    """
    Mutable state shared by the steps of one saga run.
    """

    backup_path: Optional[Path] = None
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Step:
    """
    One step of a saga.

    `side` is "dns" or "proxy" and is used to derive the audited entity type.
    `commit` marks the step whose success makes the change live. `counted`
    steps contribute to the completed count reported on failure. `domain` names
    the entry a per-domain step works on and is reported when it fails.
    """

    name: str
    action: Callable[[SagaContext], Any]
    compensation: Optional[Callable[[SagaContext], Any]] = None
    side: Optional[str] = None
    commit: bool = False
    critical_compensation: bool = False
    counted: bool = False
    domain: Optional[str] = None


@dataclass
class Saga:
    """A named step table for one operation."""

    operation: OperationType
    steps: List[Step]
    affected_domains: List[str] = field(default_factory=list)
    batch: bool = False
    context: SagaContext = field(default_factory=SagaContext)
    details: Dict[str, Any] = field(default_factory=dict)

    def planned_entity_type(self) -> EntityType:
        return _entity_type({s.side for s in self.steps if s.side})


def _entity_type(sides) -> EntityType:
    if "dns" in sides and "proxy" in sides:
        return EntityType.BOTH
    if "dns" in sides:
        return EntityType.DNS
    if "proxy" in sides:
        return EntityType.PROXY
    return EntityType.BOTH


class SagaExecutor:
    """
    Runs sagas and writes one audit entry per run.
    """

    def __init__(self, audit_logger=None):
        """
        Initialize a SagaExecutor.

        Args:
            audit_logger: Optional AuditLogger receiving one entry per saga
        """
        self.audit_logger = audit_logger
        self.logger = logging.getLogger("proxyflare.saga")

    def run(self, saga: Saga) -> SagaResult:
        """
        Run a saga to completion or to its first failing step.

        Args:
            saga: Saga to run

        Returns:
            SagaResult: Outcome of the run; failures are reported, never raised
        """
        ctx = saga.context
        completed: List[Step] = []
        touched = set()
        committed = False
        result = None

        self.logger.info(
            f"Running {saga.operation.value} ({len(saga.steps)} steps) for "
            f"{', '.join(saga.affected_domains) or 'no domains'}"
        )

        for step in saga.steps:
            if step.side:
                touched.add(step.side)
            self.logger.debug(f"Step {step.name} starting")
            try:
                step.action(ctx)
            except Exception as e:
                where = f"{step.name} ({step.domain})" if step.domain else step.name
                self.logger.error(f"Step {where} failed: {e}")
                result = self._fail(saga, step, e, completed, committed)
                break

            completed.append(step)
            if step.commit:
                committed = True
                self.logger.debug(f"Commit boundary passed at {step.name}")

        if result is None:
            result = SagaResult(
                operation=saga.operation,
                success=True,
                backup_path=ctx.backup_path,
                affected_domains=list(saga.affected_domains),
                completed_count=sum(1 for s in completed if s.counted),
                details=dict(saga.details),
            )
            self.logger.info(result.summary())

        result.entity_type = _entity_type(touched) if touched else saga.planned_entity_type()
        self._audit(saga, result)
        return result

    def _fail(
        self,
        saga: Saga,
        step: Step,
        error: Exception,
        completed: List[Step],
        committed: bool,
    ) -> SagaResult:
        result = SagaResult(
            operation=saga.operation,
            success=False,
            failed_step=step.name,
            failed_domain=step.domain,
            backup_path=saga.context.backup_path,
            affected_domains=list(saga.affected_domains),
            cause=error,
            completed_count=sum(1 for s in completed if s.counted),
            details=dict(saga.details),
        )

        if committed:
            # The proxy is already live; report instead of undoing.
            result.cause = StateInconsistencyError(step.name, error)
            self.logger.error(str(result.cause))
            return result

        for done in reversed(completed):
            if done.compensation is None:
                continue
            self.logger.info(f"Compensating {done.name}")
            try:
                done.compensation(saga.context)
            except Exception as comp_error:
                if done.critical_compensation:
                    result.cause = CriticalRollbackFailure(step.name, error, comp_error)
                    self.logger.critical(str(result.cause))
                    return result
                self.logger.error(f"Compensation for {done.name} failed: {comp_error}")
                result.rollback_errors.append(comp_error)

        return result

    def _audit(self, saga: Saga, result: SagaResult) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.log_result(result, batch=saga.batch)
        except Exception as e:
            # The change itself already happened; losing the audit line is not fatal.
            self.logger.warning(f"Failed to write audit entry: {e}")


@dataclass(frozen=True)
class Lease:
    """Token proving ownership of the saga gate."""

    token: str


class SagaGate:
    """
    Single-flight gate: at most one saga is in flight at any time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._lease: Optional[Lease] = None

    @property
    def busy(self) -> bool:
        return self._lease is not None

    def acquire(self) -> Optional[Lease]:
        """
        Take the gate.

        Returns:
            Optional[Lease]: A lease, or None if a saga is already in flight
        """
        with self._lock:
            if self._lease is not None:
                return None
            self._lease = Lease(uuid.uuid4().hex)
            return self._lease

    def release(self, lease: Lease) -> None:
        """
        Free the gate.

        Args:
            lease: Lease returned by acquire()

        Raises:
            RuntimeError: If the lease does not own the gate
        """
        with self._lock:
            if self._lease is None or self._lease != lease:
                raise RuntimeError("release() called with a lease that does not hold the gate")
            self._lease = None
