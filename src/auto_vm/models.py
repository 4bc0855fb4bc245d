"""Data models for auto-vm."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PowerState(str, Enum):
    """Backend power state of a VM."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"
    ABSENT = "absent"
    """The VM does not exist on the backend."""


class StateEntry(BaseModel):
    """Persisted record for one VM: resolved address and last-active watermark."""

    model_config = ConfigDict(frozen=True)

    vm_id: int = Field(description="Backend VM id (pure function of the identity)")
    resolved_address: str | None = Field(default=None, description="Guest IPv4 address once resolved")
    last_active: float | None = Field(default=None, description="Epoch seconds of the last confirmed use")

    def idle_seconds(self, now: float) -> float | None:
        """Seconds since last activity, or None without a watermark."""
        if self.last_active is None:
            return None
        return max(0.0, now - self.last_active)


class EvictionResult(str, Enum):
    """Outcome of one eviction attempt."""

    STOPPED = "stopped"
    """Graceful shutdown converged; entry deleted."""

    FORCED = "forced"
    """Graceful shutdown timed out, forced stop converged; entry deleted."""

    ALREADY_STOPPED = "already_stopped"
    """VM was not running when the eviction started; entry deleted."""

    SKIPPED_BUSY = "skipped_busy"
    """A provisioner holds the VM's lifecycle lease; left alone."""

    SKIPPED_ACTIVE = "skipped_active"
    """Watermark became fresh before the stop was issued; left alone."""

    FAILED = "failed"
    """VM still running after the forced stop deadline; entry kept."""


@dataclass(frozen=True)
class EvictionOutcome:
    """Result of Reaper.evict() for a single VM."""

    vm_id: int
    result: EvictionResult
    duration_seconds: float = 0.0

    @property
    def entry_deleted(self) -> bool:
        return self.result in (EvictionResult.STOPPED, EvictionResult.FORCED, EvictionResult.ALREADY_STOPPED)


@dataclass
class SweepReport:
    """Summary of one reaper sweep."""

    examined: list[int] = field(default_factory=list)
    stale_removed: list[int] = field(default_factory=list)
    active: list[int] = field(default_factory=list)
    idle_kept: list[int] = field(default_factory=list)
    busy: list[int] = field(default_factory=list)
    evictions: dict[int, EvictionOutcome] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def evicted(self) -> list[int]:
        """VM ids whose entry was deleted by an eviction."""
        return sorted(vm_id for vm_id, outcome in self.evictions.items() if outcome.entry_deleted)
