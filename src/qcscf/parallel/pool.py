from __future__ import annotations

"""Process pool running SPMD tasks over a :class:`Transport`.

``WorkerPool.run(task, payload)`` sends the task name and payload to every
worker and then executes the same task on the root. Each task is a plain
function ``fn(transport, payload)``; its return value on the root is the
result of ``run``. Tasks are registered by name and resolved lazily with
importlib, so spawned interpreters only import what they execute.
"""

from importlib import import_module
import logging
import multiprocessing as mp
import traceback
from typing import Any, Callable, Dict, List

from ..config import ParallelConfig
from ..errors import ParallelCommunicationFailure
from .transport import LocalTransport, PipeTransport, RemoteError, Transport

logger = logging.getLogger(__name__)

__all__ = ["TASKS", "resolve_task", "WorkerPool", "local_pool"]

TASKS: Dict[str, str] = {
    "fock.eri": "qcscf.fock:eri_task",
    "fock.jk": "qcscf.fock:jk_task",
    "dft.xc": "qcscf.dft.xc:xc_task",
    "grad.eri": "qcscf.grad.assembler:eri_gradient_task",
    "grad.xc": "qcscf.dft.xc:xc_gradient_task",
    "pool.ping": "qcscf.parallel.pool:ping_task",
}

_STOP = ("stop", None)


def resolve_task(name: str) -> Callable[[Transport, Any], Any]:
    try:
        target = TASKS[name]
    except KeyError:
        raise ValueError(f"Unknown parallel task '{name}'") from None
    mod, _, attr = target.partition(":")
    return getattr(import_module(mod), attr)


def ping_task(transport: Transport, payload: Any) -> Any:
    """Health check: every rank contributes its rank number."""
    import torch

    total = transport.all_reduce(torch.tensor([float(transport.rank)], dtype=torch.float64))
    return float(total.item())


def _worker_main(rank: int, size: int, conn) -> None:
    transport = PipeTransport(rank, size, {0: conn})
    while True:
        try:
            name, payload = transport.receive(0)
        except ParallelCommunicationFailure:
            break
        if name == _STOP[0]:
            break
        try:
            resolve_task(name)(transport, payload)
        except ParallelCommunicationFailure:
            break
        except Exception as exc:  # relayed to the root, which raises it
            logger.debug("worker %d: task %s failed", rank, name, exc_info=True)
            msg = f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
            try:
                transport.send(RemoteError(rank, msg), 0)
            except ParallelCommunicationFailure:
                break
    transport.close()


class WorkerPool:
    """Context-managed set of worker processes plus the root transport.

    With ``workers == 1`` no process is started and tasks run in-process on a
    :class:`LocalTransport`.
    """

    def __init__(self, config: ParallelConfig | int | None = None) -> None:
        if config is None:
            config = ParallelConfig()
        elif isinstance(config, int):
            config = ParallelConfig(workers=config)
        self.config = config
        self._procs: List[mp.process.BaseProcess] = []
        self._closed = False
        if config.workers == 1:
            self.transport: Transport = LocalTransport()
            return
        ctx = mp.get_context(config.start_method)
        conns = {}
        for rank in range(1, config.workers):
            parent, child = ctx.Pipe(duplex=True)
            proc = ctx.Process(
                target=_worker_main,
                args=(rank, config.workers, child),
                name=f"qcscf-worker-{rank}",
                daemon=True,
            )
            proc.start()
            child.close()
            conns[rank] = parent
            self._procs.append(proc)
        self.transport = PipeTransport(0, config.workers, conns)
        logger.debug("started %d worker processes (%s)", len(self._procs), config.start_method)

    @property
    def size(self) -> int:
        return self.transport.size

    @property
    def scheduling(self) -> str:
        return self.config.scheduling

    def units_hint(self) -> int:
        return self.size * self.config.units_per_worker

    def run(self, task: str, payload: Any) -> Any:
        if self._closed:
            raise ParallelCommunicationFailure("worker pool is closed")
        fn = resolve_task(task)
        try:
            for r in range(1, self.size):
                self.transport.send((task, payload), r)
            return fn(self.transport, payload)
        except Exception:
            # peers may be blocked inside a collective; the pool cannot be reused
            if self.size > 1:
                self._terminate()
            raise

    def _terminate(self) -> None:
        for proc in self._procs:
            if proc.is_alive():
                proc.terminate()
        for proc in self._procs:
            proc.join(timeout=5)
        if isinstance(self.transport, PipeTransport):
            self.transport.close()
        self._closed = True

    def close(self) -> None:
        if self._closed:
            return
        if isinstance(self.transport, PipeTransport):
            for r in range(1, self.size):
                try:
                    self.transport.send(_STOP, r)
                except ParallelCommunicationFailure:
                    pass
            for proc in self._procs:
                proc.join(timeout=10)
        self._terminate()
        logger.debug("worker pool closed")

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def local_pool() -> WorkerPool:
    return WorkerPool(ParallelConfig(workers=1))


