"""
Controller module for ProxyFlare.

This module is responsible for the update loop: it keeps the reconciliation
snapshot, admits at most one saga at a time, runs it off the event loop and
applies its result.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from proxyflare.models.models import ParsedConfig, ReconciledEntry, SagaResult
from proxyflare.reconcile.engine import reconcile, summarize
from proxyflare.saga.executor import Lease, Saga, SagaExecutor, SagaGate

RECORD_TYPES = ("A", "CNAME")


class Controller:
    """
    Single-flight coordinator between the user, the saga executor and the snapshot.
    """

    def __init__(self, provider, caddyfile, executor: SagaExecutor, zone_id: str = ""):
        """
        Initialize a Controller.

        Args:
            provider: DNS provider used to list records
            caddyfile: CaddyfileManager used to parse the Caddyfile
            executor: Runs submitted sagas
            zone_id: Zone whose records are reconciled
        """
        self.provider = provider
        self.caddyfile = caddyfile
        self.executor = executor
        self.zone_id = zone_id
        self.gate = SagaGate()
        self.results: "asyncio.Queue[Tuple[Lease, SagaResult]]" = asyncio.Queue()
        self.snapshot: List[ReconciledEntry] = []
        self.parsed: Optional[ParsedConfig] = None
        self.logger = logging.getLogger("proxyflare.controller")

    @property
    def busy(self) -> bool:
        return self.gate.busy

    async def refresh(self) -> List[ReconciledEntry]:
        """
        Re-list DNS records, re-parse the Caddyfile and reconcile.

        Returns:
            List[ReconciledEntry]: The new snapshot
        """
        records = []
        for record_type in RECORD_TYPES:
            records.extend(
                await asyncio.to_thread(
                    self.provider.list_records, self.zone_id, record_type
                )
            )
        self.parsed = await asyncio.to_thread(self.caddyfile.parse)
        self.snapshot = reconcile(records, self.parsed.entries)

        counts = summarize(self.snapshot)
        self.logger.info(
            f"Refreshed: {len(self.snapshot)} domains "
            + ", ".join(f"{status.label}={count}" for status, count in counts.items())
        )
        return self.snapshot

    async def submit(self, saga: Saga) -> Optional[asyncio.Task]:
        """
        Start a saga if none is in flight.

        Args:
            saga: Saga to run

        Returns:
            Optional[asyncio.Task]: The running task, or None if the intent was
            ignored because another saga is in flight
        """
        lease = self.gate.acquire()
        if lease is None:
            self.logger.warning(
                f"Ignoring {saga.operation.value}: another operation is in progress"
            )
            return None
        return asyncio.create_task(self._run(saga, lease))

    async def _run(self, saga: Saga, lease: Lease) -> None:
        try:
            result = await asyncio.to_thread(self.executor.run, saga)
        except Exception as e:
            # The executor reports step failures itself; this is a bug in a step table.
            self.logger.exception(f"Saga {saga.operation.value} crashed: {e}")
            result = SagaResult(
                operation=saga.operation,
                success=False,
                failed_step="executor",
                affected_domains=list(saga.affected_domains),
                cause=e,
            )
        await self.results.put((lease, result))

    async def apply_next_result(self) -> SagaResult:
        """
        Wait for the next saga result, release the gate and refresh on success.

        Returns:
            SagaResult: The applied result
        """
        lease, result = await self.results.get()
        self.gate.release(lease)
        if result.success:
            await self.refresh()
        else:
            self.logger.error(result.summary())
        return result

    async def execute(self, saga: Saga) -> Optional[SagaResult]:
        """
        Submit a saga and wait for its result.

        Returns:
            Optional[SagaResult]: None if another saga was in flight
        """
        task = await self.submit(saga)
        if task is None:
            return None
        result = await self.apply_next_result()
        await task
        return result
