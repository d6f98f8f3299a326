"""Deadline-bounded assertions over a work unit's lifecycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from meshharness.client.models import WorkState
from meshharness.core.errors import (
    CommandRejectedError,
    WorkStateError,
    WorkStateTimeoutError,
)
from meshharness.core.polling import poll_until
from meshharness.datastructures.type_aliases import DurationSeconds, WorkUnitId

if TYPE_CHECKING:  # pragma: no cover - typing only
    from meshharness.client.control import ControlSession

DEFAULT_WORK_POLL_INTERVAL = 0.25


class WorkLifecycleAsserter:
    """Poll ``work status`` until a unit reaches an expected state.

    Only "not there yet" is retried. Protocol errors and command rejections
    propagate on first sight, except that a rejection for an unknown unit is
    exactly what ``RELEASED`` looks like. Reaching a different terminal state
    fails immediately with ``WorkStateError`` instead of burning the deadline.
    """

    def __init__(
        self,
        session: ControlSession,
        *,
        interval: DurationSeconds = DEFAULT_WORK_POLL_INTERVAL,
    ) -> None:
        self.session = session
        self.interval = interval

    async def observe(self, work_id: WorkUnitId) -> WorkState:
        """Return the unit's current state, mapping unknown units to RELEASED."""
        try:
            status = await self.session.work_status(work_id)
        except CommandRejectedError as e:
            if e.is_unknown_unit:
                return WorkState.RELEASED
            raise
        return status.work_state

    async def assert_state(
        self,
        timeout: DurationSeconds,
        work_id: WorkUnitId,
        expected: WorkState,
    ) -> WorkState:
        """Wait until ``work_id`` is in ``expected`` state.

        Raises:
            WorkStateTimeoutError: the state was not reached before the deadline.
            WorkStateError: the unit settled in another terminal state.
            ProtocolError / CommandRejectedError: propagated without retry.
        """

        def _accept(state: WorkState) -> bool:
            if state is expected:
                return True
            if state.is_terminal:
                raise WorkStateError(
                    f"Work unit {work_id} reached {state.value} while waiting "
                    f"for {expected.value}"
                )
            return False

        state = await poll_until(
            lambda: self.observe(work_id),
            _accept,
            timeout=timeout,
            interval=self.interval,
            description=f"work unit {work_id} to reach {expected.value}",
            error_type=WorkStateTimeoutError,
        )
        logger.debug("Work unit {} reached {}", work_id, state.value)
        return state
