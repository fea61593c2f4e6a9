from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .correlator import TaskCorrelator
from .events import RunEventLog
from .orchestrator import RunOrchestrator
from .transport import Transport, build_transport


@dataclass
class Services:
    settings: Settings
    events: RunEventLog
    transport: Transport
    orchestrator: RunOrchestrator


def build_services(settings: Settings, *, transport: Transport | None = None) -> Services:
    events = RunEventLog(max_events=settings.max_events)
    transport = transport or build_transport(settings)
    orchestrator = RunOrchestrator(
        settings=settings,
        transport=transport,
        events=events,
        correlator=TaskCorrelator(),
    )

    return Services(
        settings=settings,
        events=events,
        transport=transport,
        orchestrator=orchestrator,
    )
