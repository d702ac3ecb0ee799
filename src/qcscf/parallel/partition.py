from __future__ import annotations

"""Work units and their assignment to workers.

Items (shell quartets or grid batches) are grouped into contiguous work
units of roughly equal estimated cost. Units are then either assigned once
(static, longest-processing-time greedy on the cost estimate) or handed out
on request by the root (dynamic). Both schemes only decide *who* computes a
unit; the reduced result is the same sum regardless.
"""

from dataclasses import dataclass
import logging
from typing import Iterator, List, Sequence

from ..basis.shells import BasisSet
from .transport import Transport

logger = logging.getLogger(__name__)

__all__ = [
    "WorkUnit",
    "estimate_quartet_cost",
    "make_work_units",
    "assign_static",
    "serve_dynamic",
    "request_units",
    "iterate_units",
]

_REQUEST = "request"


@dataclass(frozen=True)
class WorkUnit:
    index: int
    start: int
    stop: int
    cost: float

    def __len__(self) -> int:
        return self.stop - self.start


def estimate_quartet_cost(basis: BasisSet, q: Sequence[int]) -> float:
    """Cost proxy from the angular-momentum class and contraction depth of a quartet."""
    cost = 1.0
    for i in q:
        sh = basis.shells[i]
        cost *= sh.ncart * sh.nprim
    return cost


def make_work_units(costs: Sequence[float], nunits: int) -> List[WorkUnit]:
    """Split items into at most ``nunits`` contiguous units of similar total cost."""
    n = len(costs)
    if n == 0:
        return []
    nunits = max(1, min(int(nunits), n))
    total = float(sum(costs))
    target = total / nunits
    units: List[WorkUnit] = []
    start = 0
    acc = 0.0
    for i, c in enumerate(costs):
        acc += float(c)
        left_items = n - (i + 1)
        left_units = nunits - len(units) - 1
        if left_units <= 0 or left_items < left_units:
            continue
        if acc >= target or left_items == left_units:
            units.append(WorkUnit(len(units), start, i + 1, acc))
            start = i + 1
            acc = 0.0
    units.append(WorkUnit(len(units), start, n, acc))
    return units


def assign_static(units: Sequence[WorkUnit], nworkers: int) -> List[List[WorkUnit]]:
    """Longest-processing-time greedy assignment; deterministic tie breaking."""
    loads = [0.0] * nworkers
    out: List[List[WorkUnit]] = [[] for _ in range(nworkers)]
    for u in sorted(units, key=lambda u: (-u.cost, u.index)):
        w = min(range(nworkers), key=lambda r: (loads[r], r))
        out[w].append(u)
        loads[w] += u.cost
    for lst in out:
        lst.sort(key=lambda u: u.index)
    return out


def serve_dynamic(transport: Transport, units: Sequence[WorkUnit]) -> None:
    """Root-side coordinator: answer unit requests until every worker has been told to stop."""
    pending = transport.size - 1
    nxt = 0
    served = [0] * transport.size
    while pending:
        source, msg = transport.receive_any()
        if msg != _REQUEST:
            raise ValueError(f"unexpected message from rank {source} during dynamic scheduling: {msg!r}")
        if nxt < len(units):
            transport.send(nxt, source)
            served[source] += 1
            nxt += 1
        else:
            transport.send(None, source)
            pending -= 1
    logger.debug("dynamic scheduling: units per rank %s", served)


def request_units(transport: Transport, units: Sequence[WorkUnit]) -> Iterator[WorkUnit]:
    """Worker-side counterpart of :func:`serve_dynamic`: pull units from root until told to stop."""
    while True:
        transport.send(_REQUEST, 0)
        idx = transport.receive(0)
        if idx is None:
            return
        yield units[idx]


def iterate_units(transport: Transport, units: Sequence[WorkUnit], scheduling: str) -> Iterator[WorkUnit]:
    """Yield the work units this rank must compute."""
    if transport.size == 1:
        yield from units
        return
    if scheduling == "static":
        yield from assign_static(units, transport.size)[transport.rank]
        return
    if scheduling != "dynamic":
        raise ValueError(f"Unknown scheduling '{scheduling}'")
    if transport.is_root:
        serve_dynamic(transport, units)
        return
    yield from request_units(transport, units)
