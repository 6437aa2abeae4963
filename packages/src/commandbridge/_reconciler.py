"""Fallback polling of the item store for pending commands.

The primary trigger (a store webhook calling ``POST /dispatch``) is not
reliable, so the bridge periodically re-discovers ``pending`` commands
and dispatches every one that is not in the dedup cache.

Each timer tick starts a cycle on its own task.  A tick that finds the
previous cycle still running is skipped entirely, never queued, so two
cycles can never race on the dedup cache.

Status ownership: a successful dispatch leaves the command ``pending``.
Only the status consumer, reacting to a device report, moves it to
``processing`` / ``completed`` / ``failed``.  The one exception is a
command whose device has no address: that is a data problem, so the
reconciler fails it terminally.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from commandbridge._dedup import DedupCache
from commandbridge._dispatcher import CommandDispatcher
from commandbridge._errors import (
    BridgeError,
    DeviceUnresolved,
    StoreError,
)
from commandbridge._models import Command, CommandId
from commandbridge._store import PendingCommandSource
from commandbridge._topics import command_topic

logger = logging.getLogger(__name__)

UNRESOLVED_DEVICE_MESSAGE = "Device has no MAC address configured"


@dataclass
class CycleReport:
    """What one reconciliation cycle did, by command id."""

    fetched: int = 0
    dispatched: list[CommandId] = field(default_factory=list)
    skipped: list[CommandId] = field(default_factory=list)
    failed: list[CommandId] = field(default_factory=list)
    errors: list[CommandId] = field(default_factory=list)
    transport_down: bool = False


@dataclass
class PollReconciler:
    """Periodic, single-flight reconciliation job.

    Args:
        source: Reconciler-facing store port.
        dispatcher: The shared dispatch path.
        dedup: Cooldown cache shared with nothing else in the process.
        batch_size: Maximum pending commands fetched per cycle.
        interval: Seconds between timer ticks.
    """

    source: PendingCommandSource
    dispatcher: CommandDispatcher
    dedup: DedupCache
    batch_size: int = 10
    interval: float = 3.0
    skipped_ticks: int = field(default=0, init=False)
    _in_flight: bool = field(default=False, init=False, repr=False)
    _cycle_task: asyncio.Task[CycleReport | None] | None = field(
        default=None,
        init=False,
        repr=False,
    )

    @property
    def in_flight(self) -> bool:
        """True while a cycle is running."""
        return self._in_flight

    # -- Scheduling ---------------------------------------------------------

    async def run(self) -> None:
        """Tick every ``interval`` seconds until cancelled."""
        logger.info("Polling enabled (every %.1fs)", self.interval)
        try:
            while True:
                await asyncio.sleep(self.interval)
                self.tick()
        finally:
            await self.cancel_cycle()

    def tick(self) -> asyncio.Task[CycleReport | None] | None:
        """Start a cycle in the background unless one is still running."""
        if not self._claim():
            return None
        self._cycle_task = asyncio.create_task(self._run_claimed())
        return self._cycle_task

    async def run_cycle(self) -> CycleReport | None:
        """Run one cycle inline.

        Returns:
            The cycle report, or ``None`` when another cycle was
            already in flight and this one was skipped.
        """
        if not self._claim():
            return None
        return await self._run_claimed()

    async def cancel_cycle(self) -> None:
        """Cancel the background cycle, if any, and wait for it."""
        task = self._cycle_task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _claim(self) -> bool:
        if self._in_flight:
            self.skipped_ticks += 1
            logger.debug("Reconciliation cycle still running, skipping tick")
            return False
        self._in_flight = True
        return True

    async def _run_claimed(self) -> CycleReport | None:
        try:
            return await self._reconcile()
        except Exception:
            logger.exception("Reconciliation cycle failed")
            return None
        finally:
            self._in_flight = False

    # -- Cycle --------------------------------------------------------------

    async def _reconcile(self) -> CycleReport:
        report = CycleReport()

        if not self.dispatcher.available:
            logger.debug("Broker not connected, skipping reconciliation cycle")
            report.transport_down = True
            return report

        try:
            commands = await self.source.fetch_pending(self.batch_size)
        except StoreError as exc:
            if exc.unreachable:
                logger.debug("Poll error: %s", exc)
            else:
                logger.error("Poll error: %s", exc)
            return report

        report.fetched = len(commands)
        if not commands:
            return report

        logger.info("Polling found %d pending command(s)", len(commands))
        for command in commands:
            await self._reconcile_one(command, report)
        return report

    async def _reconcile_one(self, command: Command, report: CycleReport) -> None:
        if not self.dedup.should_dispatch(command.id):
            report.skipped.append(command.id)
            return

        address = command.device_address
        if address is None:
            await self._fail_unresolved(command, report)
            return

        topic = command_topic(address)
        try:
            await self.dispatcher.dispatch(topic, command.dispatch_payload())
        except BridgeError as exc:
            logger.error(
                "Failed to publish command %s: %s",
                command.id,
                exc,
                extra={"command_id": command.id, "topic": topic},
            )
            report.errors.append(command.id)
            return

        self.dedup.record_dispatch(command.id)
        report.dispatched.append(command.id)
        logger.info(
            "Command %s (%s) -> %s",
            command.id,
            command.type,
            address,
            extra={"command_id": command.id, "device": address},
        )

    async def _fail_unresolved(self, command: Command, report: CycleReport) -> None:
        raw_address = command.device.address if command.device is not None else None
        if raw_address:
            message = f"Device MAC address {raw_address!r} is not a valid topic level"
        else:
            message = UNRESOLVED_DEVICE_MESSAGE
        error = DeviceUnresolved(command.id, message)

        logger.warning(
            "Command %s: %s, marking failed",
            command.id,
            error,
            extra={"command_id": command.id},
        )
        try:
            await self.source.mark_unresolved(command.id, str(error))
        except StoreError as exc:
            logger.error(
                "Failed to mark command %s failed: %s",
                command.id,
                exc,
                extra={"command_id": command.id},
            )
            report.errors.append(command.id)
            return
        report.failed.append(command.id)
