"""
State Machine for Store Sync Runs.

WHAT:
    Pure description of the phases one store sync walks through and the
    legal transitions between them. No database or network access.

WHY:
    The orchestrator asks this module "what comes next" instead of encoding
    step order in sequential code, so the ordering can be tested in isolation.

STATE TRANSITIONS:
    IDLE → start → CONNECTING
    CONNECTING → step_succeeded → FETCHING_PRODUCTS
    FETCHING_PRODUCTS → step_succeeded → FETCHING_VARIATIONS
    FETCHING_VARIATIONS → step_succeeded → FETCHING_ORDERS
    FETCHING_ORDERS → step_succeeded → SAVING
    SAVING → step_succeeded → IDLE
    Any running phase → failed → ERROR
    ERROR → error_recorded → IDLE

REFERENCES:
    - app/services/store_sync_service.py (driver)
    - app/models.py (SyncStepEnum, persisted per phase)
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from app.models import SyncStepEnum


class SyncPhase(str, enum.Enum):
    idle = "idle"
    connecting = "connecting"
    fetching_products = "fetching_products"
    fetching_variations = "fetching_variations"
    fetching_orders = "fetching_orders"
    saving = "saving"
    error = "error"


class SyncEvent(str, enum.Enum):
    start = "start"
    step_succeeded = "step_succeeded"
    failed = "failed"
    error_recorded = "error_recorded"


class InvalidSyncTransition(Exception):
    """Event is not allowed in the current phase."""

    def __init__(self, phase: SyncPhase, event: SyncEvent):
        super().__init__(f"Cannot apply '{event.value}' while in '{phase.value}'")
        self.phase = phase
        self.event = event


# Strict step order of a successful run
RUN_ORDER: Tuple[SyncPhase, ...] = (
    SyncPhase.connecting,
    SyncPhase.fetching_products,
    SyncPhase.fetching_variations,
    SyncPhase.fetching_orders,
    SyncPhase.saving,
)

# Value written to Store.sync_step while a phase runs
PHASE_TO_STEP: Dict[SyncPhase, SyncStepEnum] = {
    SyncPhase.connecting: SyncStepEnum.connection,
    SyncPhase.fetching_products: SyncStepEnum.products,
    SyncPhase.fetching_variations: SyncStepEnum.variations,
    SyncPhase.fetching_orders: SyncStepEnum.orders,
    SyncPhase.saving: SyncStepEnum.saving,
}

_TRANSITIONS: Dict[Tuple[SyncPhase, SyncEvent], SyncPhase] = {
    (SyncPhase.idle, SyncEvent.start): SyncPhase.connecting,
    (SyncPhase.error, SyncEvent.error_recorded): SyncPhase.idle,
}
for _index, _phase in enumerate(RUN_ORDER):
    _following = RUN_ORDER[_index + 1] if _index + 1 < len(RUN_ORDER) else SyncPhase.idle
    _TRANSITIONS[(_phase, SyncEvent.step_succeeded)] = _following
    _TRANSITIONS[(_phase, SyncEvent.failed)] = SyncPhase.error


def next_phase(phase: SyncPhase, event: SyncEvent) -> SyncPhase:
    """Transition function.

    Raises:
        InvalidSyncTransition: e.g. step_succeeded while IDLE, or start
            while a run is already in progress.
    """
    try:
        return _TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidSyncTransition(phase, event) from None


def step_for(phase: SyncPhase) -> Optional[SyncStepEnum]:
    """Persisted sync_step for a phase (None for IDLE and ERROR)."""
    return PHASE_TO_STEP.get(phase)


def is_running(phase: SyncPhase) -> bool:
    return phase in PHASE_TO_STEP


@dataclass
class SyncRun:
    """
    In-memory cursor over one sync run.

    WHAT: Holds the current phase and the phase that failed (if any)
    WHY: A failed run must report WHERE it failed; the failing step stays
         frozen on the Store row after the run returns to IDLE

    Usage:
        run = SyncRun()
        run.start()                 # -> CONNECTING
        run.succeed()               # -> FETCHING_PRODUCTS
        run.fail()                  # -> ERROR, failed_phase = FETCHING_PRODUCTS
        run.finish_error()          # -> IDLE
    """

    phase: SyncPhase = SyncPhase.idle
    failed_phase: Optional[SyncPhase] = None

    def _apply(self, event: SyncEvent) -> SyncPhase:
        self.phase = next_phase(self.phase, event)
        return self.phase

    def start(self) -> SyncPhase:
        self.failed_phase = None
        return self._apply(SyncEvent.start)

    def succeed(self) -> SyncPhase:
        return self._apply(SyncEvent.step_succeeded)

    def fail(self) -> SyncPhase:
        failing = self.phase
        self._apply(SyncEvent.failed)
        self.failed_phase = failing
        return self.phase

    def finish_error(self) -> SyncPhase:
        return self._apply(SyncEvent.error_recorded)

    @property
    def step(self) -> Optional[SyncStepEnum]:
        return step_for(self.phase)

    @property
    def failed_step(self) -> Optional[SyncStepEnum]:
        return step_for(self.failed_phase) if self.failed_phase else None

    @property
    def done(self) -> bool:
        return self.phase == SyncPhase.idle
