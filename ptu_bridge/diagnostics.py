"""Diagnostics summary for the active pan-tilt session."""

from __future__ import annotations

import logging
from typing import Optional

from .core import DiagnosticsSummary, HealthLevel
from .health import HealthReporter
from .session import SessionManager

LOGGER = logging.getLogger(__name__)

NOMINAL_MESSAGE = "All normal."
DRY_RUN_MESSAGE = "Dry run: device not initialised."


class DiagnosticsReporter:
    """Summarises session health and the unit's control mode.

    Connectivity itself is the supervisor's concern, so a connected session
    is nominal unless it only exists because of dry-run mode.
    """

    def __init__(
        self, session: SessionManager, *, health: Optional[HealthReporter] = None
    ) -> None:
        self._session = session
        self._health = health

    async def report(self) -> Optional[DiagnosticsSummary]:
        protocol = self._session.protocol
        active = self._session.session
        if protocol is None or active is None:
            return None

        mode = await protocol.get_mode()
        if active.dry_run:
            summary = DiagnosticsSummary(HealthLevel.DEGRADED, mode, DRY_RUN_MESSAGE)
        else:
            summary = DiagnosticsSummary(HealthLevel.NOMINAL, mode, NOMINAL_MESSAGE)

        if self._health is not None:
            await self._health.update(
                "device",
                summary.level is HealthLevel.NOMINAL,
                f"{summary.message} mode={mode.value}",
            )
        return summary
