"""Multi-container orchestration.

  _network      - ContainerNetwork (build, start, supervise, teardown) and run_container()
  _build        - build grouping and the bounded concurrent build phase
  _readiness    - readiness probes gating dependent containers
  _outcome      - RunOutcome (per-container results and errors)
  _diagnostics  - error excerpts and the aggregated failure report
"""

from orchard.network._build import BuildGroup, build_all, plan_builds
from orchard.network._diagnostics import render_error_excerpt, render_report
from orchard.network._network import ContainerNetwork, NetworkState, run_container
from orchard.network._outcome import RunOutcome
from orchard.network._readiness import (
    ProbeContext,
    ReadinessProbe,
    delay_probe,
    health_probe,
    messenger_probe,
)

__all__ = [
    "BuildGroup",
    "ContainerNetwork",
    "NetworkState",
    "ProbeContext",
    "ReadinessProbe",
    "RunOutcome",
    "build_all",
    "delay_probe",
    "health_probe",
    "messenger_probe",
    "plan_builds",
    "render_error_excerpt",
    "render_report",
    "run_container",
]
