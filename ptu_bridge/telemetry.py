"""Periodic state sampling for the pan-tilt session."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .adapters.serial_link import LINK_ERRORS
from .core import (
    Axis,
    DiagnosticsSink,
    JointState,
    SnapshotSink,
    StateSnapshot,
    invoke_callback,
)
from .diagnostics import DiagnosticsReporter
from .session import SessionManager

LOGGER = logging.getLogger(__name__)


class PollingPublisher:
    """Samples both axes once per tick and emits a :class:`StateSnapshot`.

    The tick cadence is driven by the supervisor; this class only performs a
    single sample when asked.
    """

    def __init__(
        self,
        session: SessionManager,
        diagnostics: DiagnosticsReporter,
        *,
        joint_name_prefix: str = "",
        on_snapshot: Optional[SnapshotSink] = None,
        on_diagnostics: Optional[DiagnosticsSink] = None,
    ) -> None:
        self._session = session
        self._diagnostics = diagnostics
        self._prefix = joint_name_prefix
        self._on_snapshot = on_snapshot
        self._on_diagnostics = on_diagnostics
        self._last_snapshot: Optional[StateSnapshot] = None
        self._tick_count = 0

    @property
    def last_snapshot(self) -> Optional[StateSnapshot]:
        return self._last_snapshot

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def joint_name(self, axis: Axis) -> str:
        return f"{self._prefix}{axis.value}"

    async def tick(self) -> bool:
        """Sample and publish once. Returns whether the session is still up."""
        protocol = self._session.protocol
        if protocol is None:
            return False

        try:
            joints = {}
            for axis in Axis:
                joints[axis] = JointState(
                    name=self.joint_name(axis),
                    position=await protocol.get_position(axis),
                    velocity=await protocol.get_speed(axis),
                )
            snapshot = StateSnapshot(
                pan=joints[Axis.PAN],
                tilt=joints[Axis.TILT],
                timestamp=datetime.now(timezone.utc),
            )
            self._last_snapshot = snapshot
            self._tick_count += 1
            await invoke_callback(self._on_snapshot, snapshot)

            summary = await self._diagnostics.report()
        except LINK_ERRORS as exc:
            return self._session.handle_io_error(exc, "state poll")

        if summary is not None:
            await invoke_callback(self._on_diagnostics, summary)
        return self._session.is_connected
