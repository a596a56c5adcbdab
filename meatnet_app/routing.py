#!/usr/bin/env python3
"""
Route Selection

A request for a probe goes over the direct link when there is one; otherwise
through the connected repeater with the strongest signal among those that
currently hear the probe. Log requests are the exception: with no direct link
they go to every repeater that hears the probe, and the log store drops the
duplicate records.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .devices import Probe, RepeaterNode
from .models import DEFAULT_PROBE_REACHABILITY


class RouteKind(Enum):
    DIRECT = "direct"
    REPEATER = "repeater"


@dataclass
class Route:
    kind: RouteKind
    link_id: str

    @property
    def is_direct(self) -> bool:
        return self.kind == RouteKind.DIRECT


class RouteSelector:
    """Chooses links to reach a probe from the current device tables."""

    def __init__(
        self,
        probes: Dict[int, Probe],
        nodes: Dict[str, RepeaterNode],
        clock: Callable[[], float],
        reachability_timeout: float = DEFAULT_PROBE_REACHABILITY,
    ):
        self._probes = probes
        self._nodes = nodes
        self._clock = clock
        self.reachability_timeout = reachability_timeout

    def direct_route(self, serial_number: int) -> Optional[Route]:
        probe = self._probes.get(serial_number)
        if probe is not None and probe.connected and probe.link_id:
            return Route(RouteKind.DIRECT, probe.link_id)
        return None

    def repeaters_for(self, serial_number: int) -> List[RepeaterNode]:
        """Connected repeaters hearing the probe, strongest signal first."""
        now = self._clock()
        nodes = [
            node for node in self._nodes.values()
            if node.connected and node.reaches(serial_number, now, self.reachability_timeout)
        ]
        return sorted(nodes, key=lambda node: node.rssi, reverse=True)

    def is_reachable_via_mesh(self, serial_number: int) -> bool:
        return bool(self.repeaters_for(serial_number))

    def best_route(self, serial_number: int) -> Optional[Route]:
        direct = self.direct_route(serial_number)
        if direct is not None:
            return direct
        nodes = self.repeaters_for(serial_number)
        if not nodes:
            return None
        return Route(RouteKind.REPEATER, nodes[0].link_id)

    def log_routes(self, serial_number: int) -> List[Route]:
        direct = self.direct_route(serial_number)
        if direct is not None:
            return [direct]
        return [Route(RouteKind.REPEATER, node.link_id) for node in self.repeaters_for(serial_number)]
