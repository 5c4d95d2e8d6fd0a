"""Explicit waits, post-action settling, and extension readiness polling.

Every loop here runs against an absolute deadline taken from the event loop clock.
Timeouts come back as data (`WaitOutcome.timed_out`, `SettleOutcome.settled`,
`ExtensionReadiness.ready`); only a closed tab or an unreachable browser escapes as an
exception. Cancelling the caller cancels every poller started on its behalf.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Sequence

from .browser import BrowserCommandError, BrowserUnavailableError, NodeHandle, PageDriver
from .config import ServerConfig
from .errors import UID_FAILURES, ErrorKind, InvalidArguments, ResolutionError
from .events import EventSubscription, PageEventKind
from .locators import LocatorKind, LocatorStrategy
from .resolver import LocatorResolver

logger = logging.getLogger("extdebug.waiting")


def _ms(seconds: float) -> int:
    return max(0, int(round(seconds * 1000)))


@dataclass(frozen=True)
class WaitOutcome:
    success: bool
    elapsed_ms: int
    timed_out: bool = False
    matched_strategy: LocatorKind | None = None
    error_kind: ErrorKind | None = None
    strategies: tuple[LocatorStrategy, ...] = ()
    timeout_ms: int = 0
    handle: NodeHandle | None = None
    message: str = ""

    def to_text(self) -> str:
        if self.success:
            matched = next(
                (s for s in self.strategies if s.kind is self.matched_strategy), None
            )
            label = matched.describe() if matched else self.matched_strategy.value
            return f"Found element by {label} after {self.elapsed_ms}ms"
        if self.timed_out:
            tried = ", ".join(s.describe() for s in self.strategies)
            text = f"Timed out after {self.elapsed_ms}ms waiting for {tried}"
        else:
            text = f"Wait failed after {self.elapsed_ms}ms"
        if self.message:
            text += f"\n{self.message}"
        return text


@dataclass(frozen=True)
class SettleOutcome:
    settled: bool
    navigated: bool
    elapsed_ms: int
    mutations: int = 0

    def to_text(self) -> str:
        nav = ", after navigation" if self.navigated else ""
        if self.settled:
            return f"Page settled in {self.elapsed_ms}ms ({self.mutations} DOM changes{nav})"
        return (
            f"Page still changing after {self.elapsed_ms}ms "
            f"({self.mutations} DOM changes{nav}); later results may race the page"
        )


class ExtensionCheck(Enum):
    STORAGE = "storage"
    RUNTIME = "runtime"
    PERMISSIONS = "permissions"


CHECK_EXPRESSIONS = {
    ExtensionCheck.STORAGE:
        "typeof chrome !== 'undefined' && !!chrome.storage && !!chrome.storage.local",
    ExtensionCheck.RUNTIME:
        "typeof chrome !== 'undefined' && !!chrome.runtime && !!chrome.runtime.id",
    ExtensionCheck.PERMISSIONS:
        "typeof chrome !== 'undefined' && !!chrome.permissions",
}


@dataclass(frozen=True)
class ExtensionReadiness:
    extension_id: str
    ready: bool
    checks: dict[ExtensionCheck, bool] = field(default_factory=dict)
    elapsed_ms: int = 0

    def to_text(self) -> str:
        state = "ready" if self.ready else "NOT ready"
        lines = [f"Extension {self.extension_id} is {state} ({self.elapsed_ms}ms)"]
        for check, passed in self.checks.items():
            lines.append(f"- {check.value}: {'ok' if passed else 'unavailable'}")
        return "\n".join(lines)


class WaitEngine:
    def __init__(self, resolver: LocatorResolver, driver: PageDriver, config: ServerConfig,
                 tab_id: Callable[[], str]):
        self.resolver = resolver
        self.driver = driver
        self.config = config
        self._tab_id = tab_id

    # ── Explicit waits ──────────────────────────────────────────

    async def wait_for(self, strategies: Sequence[LocatorStrategy],
                       timeout_ms: int | None = None) -> WaitOutcome:
        """Race every strategy until one resolves or *timeout_ms* elapses."""
        if not strategies:
            raise InvalidArguments("wait_for", "At least one locator strategy is required")
        strategies = tuple(dict.fromkeys(strategies))
        if timeout_ms is None:
            timeout_ms = self.config.wait_timeout_ms
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout_ms / 1000
        tab_id = self._tab_id()

        tasks = {
            asyncio.create_task(self._poll(strategy, deadline, tab_id)): strategy
            for strategy in strategies
        }
        failures: dict[LocatorStrategy, ResolutionError] = {}
        try:
            pending = set(tasks)
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                # Simultaneous finishers are ranked in the order the strategies were given
                for task in (t for t in tasks if t in done):
                    result = task.result()
                    if isinstance(result, NodeHandle):
                        return WaitOutcome(
                            success=True,
                            elapsed_ms=_ms(loop.time() - start),
                            matched_strategy=tasks[task].kind,
                            strategies=strategies,
                            timeout_ms=timeout_ms,
                            handle=result,
                        )
                    failures[tasks[task]] = result
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        elapsed_ms = _ms(loop.time() - start)
        message = "\n".join(f"- {s.describe()}: {err.message}" for s, err in failures.items())
        if len(failures) == len(strategies) and all(
            err.kind in UID_FAILURES for err in failures.values()
        ):
            first = failures[strategies[0]]
            return WaitOutcome(
                success=False,
                elapsed_ms=elapsed_ms,
                error_kind=first.kind,
                strategies=strategies,
                timeout_ms=timeout_ms,
                message=message,
            )
        return WaitOutcome(
            success=False,
            elapsed_ms=elapsed_ms,
            timed_out=True,
            error_kind=ErrorKind.TIMEOUT,
            strategies=strategies,
            timeout_ms=timeout_ms,
            message=message,
        )

    async def _poll(self, strategy: LocatorStrategy, deadline: float,
                    tab_id: str) -> NodeHandle | ResolutionError:
        loop = asyncio.get_running_loop()
        async with self.driver.events.subscribe(tab_id) as events:
            while True:
                result = await self.resolver.resolve(strategy)
                if isinstance(result, NodeHandle) or result.kind in UID_FAILURES:
                    return result
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return result
                # Retry on the next DOM change, or after one poll interval
                if await events.get(timeout=min(self.config.poll_interval, remaining)):
                    events.drain()

    # ── Implicit settle ─────────────────────────────────────────

    async def settle_after_action(self, triggered_navigation: bool = False,
                                  events: EventSubscription | None = None) -> SettleOutcome:
        """Wait for navigation (if any) and then for a quiet DOM.

        *events* should be subscribed before the action ran so no mutation is missed.
        """
        if events is None:
            async with self.driver.events.subscribe(self._tab_id()) as subscription:
                return await self.settle_after_action(triggered_navigation, subscription)

        loop = asyncio.get_running_loop()
        start = loop.time()
        quiet = self.config.quiet_period
        deadline = start + self.config.stable_dom_timeout
        if triggered_navigation:
            deadline += self.config.navigation_timeout

        navigated = False
        mutations = 0
        if triggered_navigation:
            seen, changes = await self._await_navigation(
                events, start + self.config.navigation_timeout
            )
            navigated = seen
            mutations += changes

        last_activity = loop.time()
        while True:
            now = loop.time()
            quiet_until = last_activity + quiet
            if now >= quiet_until:
                settled = True
                break
            if now >= deadline:
                settled = False
                break
            event = await events.get(timeout=min(quiet_until, deadline) - now)
            if event is None:
                continue
            if event.kind is PageEventKind.MUTATION:
                mutations += 1
            elif event.kind is PageEventKind.NAVIGATION_STARTED:
                navigated = True
                _, changes = await self._await_navigation(
                    events, min(deadline, loop.time() + self.config.navigation_timeout),
                    started=True,
                )
                mutations += changes
            last_activity = loop.time()

        outcome = SettleOutcome(settled, navigated, _ms(loop.time() - start), mutations)
        if not settled:
            logger.info("page did not settle within %dms (%d mutations)",
                        outcome.elapsed_ms, mutations)
        return outcome

    async def _await_navigation(self, events: EventSubscription, deadline: float,
                                started: bool = False) -> tuple[bool, int]:
        """Consume events until navigation completes. Returns (navigation seen, mutations)."""
        loop = asyncio.get_running_loop()
        mutations = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return started, mutations
            event = await events.get(timeout=remaining)
            if event is None:
                return started, mutations
            if event.kind is PageEventKind.NAVIGATION_COMPLETED:
                return True, mutations
            if event.kind is PageEventKind.NAVIGATION_STARTED:
                started = True
            else:
                mutations += 1

    # ── Extension readiness ─────────────────────────────────────

    async def wait_for_extension_ready(self, extension_id: str,
                                       checks: Iterable[ExtensionCheck],
                                       timeout_ms: int | None = None) -> ExtensionReadiness:
        """Poll the selected checks until all pass or the timeout elapses.

        A check that has passed is not re-evaluated. Partial results are reported.
        """
        status = {check: False for check in checks}
        if not status:
            raise InvalidArguments("wait_for_extension_ready", "Select at least one check")
        if timeout_ms is None:
            timeout_ms = self.config.extension_ready_timeout_ms
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout_ms / 1000

        while True:
            pending = [check for check, passed in status.items() if not passed]
            remaining = deadline - loop.time()
            if not pending or remaining <= 0:
                break
            try:
                results = await asyncio.wait_for(
                    asyncio.gather(*(self._run_check(extension_id, c) for c in pending)),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                break
            for check, passed in zip(pending, results):
                status[check] = status[check] or passed
            if all(status.values()):
                break
            await asyncio.sleep(min(self.config.poll_interval, max(0.0, deadline - loop.time())))

        return ExtensionReadiness(
            extension_id=extension_id,
            ready=all(status.values()),
            checks=status,
            elapsed_ms=_ms(loop.time() - start),
        )

    async def _run_check(self, extension_id: str, check: ExtensionCheck) -> bool:
        try:
            return bool(await self.driver.evaluate_in_extension(
                extension_id, CHECK_EXPRESSIONS[check]
            ))
        except BrowserUnavailableError:
            raise
        except BrowserCommandError as exc:
            logger.debug("readiness check %s for %s failed: %s", check.value, extension_id, exc)
            return False
