from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loreweave.sim.core import Simulation


class RuleModule:
    """Deterministic world-growth rule-module substrate.

    Rule modules are registered on a ``Simulation`` instance and are executed in
    stable registration order for every lifecycle hook. Era progression, the
    growth phase and pressure drift are all rule modules.
    """

    name: str

    def on_simulation_start(self, sim: Simulation) -> None:
        """Called once, immediately when the module is registered."""

    def on_tick_start(self, sim: Simulation, tick: int) -> None:
        """Called at the start of each simulation tick, before any growth."""

    def on_tick_end(self, sim: Simulation, tick: int) -> None:
        """Called at the end of each simulation tick."""

    def on_era_changed(self, sim: Simulation, previous_era_id: str | None, era_id: str) -> None:
        """Called when the era schedule moves the world into a new era."""
