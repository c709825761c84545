"""
Bounded, cancellable polling.

Every wait in the provisioner goes through ``Waiter`` so that tests can swap
in a fake sleep and an operator abort (SIGINT/SIGTERM) stops a poll within
one interval.  There is no unbounded wait: each poll has an attempt ceiling.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from provisioner.errors import OperationCancelled, PollTimeout, ProvisionerError
from provisioner.models import EXEC_TIMED_OUT, MANAGEMENT_ONLINE

logger = logging.getLogger(__name__)

# Defaults mirrored from the publisher bootstrap scripts: 15 s x 40 = 10 min.
DEFAULT_POLL_INTERVAL = 15.0
DEFAULT_MAX_ATTEMPTS = 40

READINESS_TIMED_OUT = EXEC_TIMED_OUT


class Waiter:
    """Sleeps between poll attempts and honours a shared cancel event."""

    def __init__(
        self,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("operation cancelled")

    def sleep(self, seconds: float) -> None:
        self.check()
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.cancel_event.wait(seconds):
            raise OperationCancelled("operation cancelled")
        self.check()


def poll_until(
    observe: Callable[[], Any],
    done: Callable[[Any], bool],
    *,
    interval: float,
    max_attempts: int,
    waiter: Waiter,
    description: str,
) -> Any:
    """Call *observe* until *done* accepts its result.

    The first observation happens immediately; *interval* is slept only
    between attempts, so the total wait never exceeds
    ``(max_attempts - 1) * interval``.  Raises ``PollTimeout`` after
    *max_attempts* observations that were not done.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last: Any = None
    for attempt in range(1, max_attempts + 1):
        waiter.check()
        last = observe()
        if done(last):
            logger.debug("%s: done after %d attempt(s)", description, attempt)
            return last
        logger.debug("%s: attempt %d/%d observed %r", description, attempt, max_attempts, last)
        if attempt < max_attempts:
            waiter.sleep(interval)

    raise PollTimeout(
        f"{description}: no result after {max_attempts} attempts",
        attempts=max_attempts,
        last_observed=None if last is None else str(last),
    )


class ReadinessPoller:
    """Blocks until an instance's management agent reports a heartbeat.

    ``heartbeat`` is any object with ``ping_status(instance_id) -> str | None``
    (see ``connectors.aws.ManagementPlane``).
    """

    def __init__(self, heartbeat, waiter: Waiter | None = None) -> None:
        self._heartbeat = heartbeat
        self._waiter = waiter or Waiter()

    def observe(self, instance_id: str) -> str:
        try:
            return self._heartbeat.ping_status(instance_id) or "NotObserved"
        except ProvisionerError as exc:
            # The instance may not be registered with the management plane
            # yet; count it as a missed heartbeat.
            logger.info("Heartbeat lookup for %s failed: %s", instance_id, exc)
            return "NotObserved"

    def wait_online(
        self,
        instance_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> str:
        """Return ``"Online"`` on the first heartbeat or ``"TimedOut"``."""
        logger.info(
            "Waiting for %s to come online (every %ss, up to %d attempts)",
            instance_id, poll_interval, max_attempts,
        )
        try:
            poll_until(
                lambda: self.observe(instance_id),
                lambda status: status == MANAGEMENT_ONLINE,
                interval=poll_interval,
                max_attempts=max_attempts,
                waiter=self._waiter,
                description=f"wait-online {instance_id}",
            )
        except PollTimeout as exc:
            logger.warning("%s never came online: %s", instance_id, exc)
            return READINESS_TIMED_OUT
        return MANAGEMENT_ONLINE
