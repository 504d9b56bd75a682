"""RunOutcome: what every container in a network run ended with."""

from __future__ import annotations

from collections.abc import Iterator, Mapping

from orchard.command import CommandResult
from orchard.errors import OrchestratorError
from orchard.network._diagnostics import render_report


class RunOutcome(Mapping[str, CommandResult | OrchestratorError]):
    """Maps logical container name to its CommandResult or the error it ended with.

    Errors raised while stopping and removing containers or the network are
    kept on ``teardown_errors``; they never replace a container's own entry.
    """

    def __init__(
        self,
        network_name: str,
        entries: Mapping[str, CommandResult | OrchestratorError],
        teardown_errors: list[Exception] | None = None,
    ) -> None:
        self.network_name = network_name
        self._entries = dict(entries)
        self.teardown_errors = teardown_errors if teardown_errors is not None else []

    def __getitem__(self, name: str) -> CommandResult | OrchestratorError:
        return self._entries[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def failures(self) -> dict[str, OrchestratorError]:
        return {n: e for n, e in self._entries.items() if isinstance(e, OrchestratorError)}

    def results(self) -> dict[str, CommandResult]:
        return {n: r for n, r in self._entries.items() if isinstance(r, CommandResult)}

    def successful(self) -> bool:
        return not self.failures()

    def report(self) -> str:
        return render_report(self.network_name, self._entries, self.teardown_errors)

    def __repr__(self) -> str:
        kinds = {
            n: (e.kind if isinstance(e, OrchestratorError) else f"status {e.status}")
            for n, e in self._entries.items()
        }
        return f"RunOutcome({self.network_name!r}, {kinds})"
