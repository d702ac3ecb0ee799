from __future__ import annotations

"""Message-passing transport used by the parallel Fock/gradient builds.

The engine only relies on ``send``, ``receive``, ``all_reduce`` and
``barrier`` (plus ``receive_any`` for dynamic work distribution). Two
implementations are provided:

- :class:`LocalTransport`: a single participant, all collectives are no-ops.
- :class:`PipeTransport`: star topology over ``multiprocessing`` pipes. Rank 0
  (the root) holds one connection per worker; workers only talk to the root.
  Reductions are summed on the root in rank order and broadcast back.

Objects travel as pickled byte strings so tensors are copied rather than
shared through file descriptors. Any transport-level failure surfaces as
:class:`~qcscf.errors.ParallelCommunicationFailure`; no retry is attempted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import pickle
from multiprocessing.connection import Connection, wait
from typing import Any, Dict, Tuple

import torch

from ..errors import ParallelCommunicationFailure

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["RemoteError", "Transport", "LocalTransport", "PipeTransport"]


@dataclass(frozen=True)
class RemoteError:
    """Exception report relayed from a worker to the root."""

    rank: int
    message: str


class Transport(ABC):
    rank: int
    size: int

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    @abstractmethod
    def send(self, obj: Any, dest: int) -> None:
        ...

    @abstractmethod
    def receive(self, source: int) -> Any:
        ...

    @abstractmethod
    def receive_any(self) -> Tuple[int, Any]:
        ...

    @abstractmethod
    def all_reduce(self, tensor: Tensor) -> Tensor:
        """Element-wise sum over all participants; every rank gets the result."""

    @abstractmethod
    def barrier(self) -> None:
        ...


class LocalTransport(Transport):
    def __init__(self) -> None:
        self.rank = 0
        self.size = 1

    def send(self, obj: Any, dest: int) -> None:
        raise ParallelCommunicationFailure(f"LocalTransport has no peer {dest}", rank=0)

    def receive(self, source: int) -> Any:
        raise ParallelCommunicationFailure(f"LocalTransport has no peer {source}", rank=0)

    def receive_any(self) -> Tuple[int, Any]:
        raise ParallelCommunicationFailure("LocalTransport has no peers", rank=0)

    def all_reduce(self, tensor: Tensor) -> Tensor:
        return tensor

    def barrier(self) -> None:
        return None


class PipeTransport(Transport):
    def __init__(self, rank: int, size: int, conns: Dict[int, Connection]) -> None:
        if size < 1 or not 0 <= rank < size:
            raise ValueError(f"invalid rank {rank} for size {size}")
        if rank == 0 and set(conns) != set(range(1, size)):
            raise ValueError("root needs one connection per worker")
        if rank != 0 and set(conns) != {0}:
            raise ValueError("workers connect to the root only")
        self.rank = rank
        self.size = size
        self._conns = dict(conns)

    def _conn(self, peer: int) -> Connection:
        try:
            return self._conns[peer]
        except KeyError:
            raise ParallelCommunicationFailure(
                f"rank {self.rank} has no connection to rank {peer}", rank=self.rank
            ) from None

    def send(self, obj: Any, dest: int) -> None:
        conn = self._conn(dest)
        try:
            conn.send_bytes(pickle.dumps(obj, protocol=pickle.HIGHEST_PROTOCOL))
        except (BrokenPipeError, ConnectionError, EOFError, OSError) as exc:
            raise ParallelCommunicationFailure(
                f"send from rank {self.rank} to rank {dest} failed: {exc}", rank=dest
            ) from exc

    def _recv(self, source: int, conn: Connection) -> Any:
        try:
            obj = pickle.loads(conn.recv_bytes())
        except (BrokenPipeError, ConnectionError, EOFError, OSError) as exc:
            raise ParallelCommunicationFailure(
                f"receive on rank {self.rank} from rank {source} failed: {exc}", rank=source
            ) from exc
        if isinstance(obj, RemoteError):
            raise ParallelCommunicationFailure(f"worker {obj.rank} failed: {obj.message}", rank=obj.rank)
        return obj

    def receive(self, source: int) -> Any:
        return self._recv(source, self._conn(source))

    def receive_any(self) -> Tuple[int, Any]:
        by_conn = {id(c): r for r, c in self._conns.items()}
        try:
            ready = wait(list(self._conns.values()))
        except OSError as exc:
            raise ParallelCommunicationFailure(f"wait on rank {self.rank} failed: {exc}", rank=self.rank) from exc
        # lowest rank first keeps the service order reproducible when several are ready
        source = min(by_conn[id(c)] for c in ready)
        return source, self._recv(source, self._conns[source])

    def all_reduce(self, tensor: Tensor) -> Tensor:
        if self.size == 1:
            return tensor
        if self.is_root:
            total = tensor.detach().clone()
            for r in range(1, self.size):
                part = self.receive(r)
                if not isinstance(part, torch.Tensor) or part.shape != total.shape:
                    raise ParallelCommunicationFailure(
                        f"rank {r} contributed an incompatible partial to all_reduce", rank=r
                    )
                total += part
            for r in range(1, self.size):
                self.send(total, r)
            return total
        self.send(tensor.detach(), 0)
        return self.receive(0)

    def barrier(self) -> None:
        if self.size == 1:
            return
        if self.is_root:
            for r in range(1, self.size):
                self.receive(r)
            for r in range(1, self.size):
                self.send(None, r)
        else:
            self.send(None, 0)
            self.receive(0)

    def close(self) -> None:
        for conn in self._conns.values():
            conn.close()
