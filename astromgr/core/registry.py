"""Instance descriptors of the loaded generation and their live segments."""

# Builtin dependencies
from __future__ import annotations
import dataclasses
import enum
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

# Local dependencies
from astromgr.core.segments import SEGMENT_KINDS, Segment, derive_segment_names


class InstanceStatus(enum.IntFlag):
    INACTIVE = 0x00
    WAITING = 0x01
    RUNNING = 0x02
    FINISHED = 0x04
    ERRORED = 0x08
    ENDED = 0x10
    ERRENDED = 0x20


TERMINAL = InstanceStatus.ENDED | InstanceStatus.ERRENDED
AWAITING_REAP = InstanceStatus.FINISHED | InstanceStatus.ERRORED
LIVE = InstanceStatus.RUNNING | AWAITING_REAP


@dataclass
class InstanceDescriptor:
    """One population member: a model and the game/agent pair evaluating it."""

    id: int
    model_path: str
    generation: int
    status: InstanceStatus = InstanceStatus.INACTIVE
    game_pid: int = -1
    agent_pid: int = -1
    shmem_input: str = ""
    shmem_output: str = ""
    shmem_status: str = ""
    fitness: float = 0.0
    game_seed: int = 0
    score_value: int = 0
    score_time: float = 0.0

    def __post_init__(self):
        if not self.shmem_input:
            self.shmem_input, self.shmem_output, self.shmem_status = derive_segment_names(self.model_path)

    @property
    def segment_names(self) -> dict[str, str]:
        return {"input": self.shmem_input, "output": self.shmem_output, "status": self.shmem_status}


class InstanceRegistry:
    """Descriptor collection plus name -> segment tables, behind one lock.

    Readers receive copies. Mutating methods are meant for the scheduler;
    :meth:`locked` groups several calls into one critical section (the lock
    is re-entrant).
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._descriptors: list[InstanceDescriptor] = []
        self._segments: dict[str, dict[str, Segment]] = {kind: {} for kind in SEGMENT_KINDS}

    @contextmanager
    def locked(self) -> Iterator[InstanceRegistry]:
        with self._lock:
            yield self

    def __len__(self) -> int:
        with self._lock:
            return len(self._descriptors)

    def load(self, model_paths: list[str | os.PathLike], generation: int):
        """Replace every descriptor with fresh ones for `model_paths`.

        Ids are assigned densely in list order.
        """
        with self._lock:
            self._descriptors = [
                InstanceDescriptor(id=i, model_path=os.fspath(path), generation=generation)
                for i, path in enumerate(model_paths)
            ]

    def clear(self):
        with self._lock:
            self._descriptors = []

    def get(self, instance_id: int) -> InstanceDescriptor | None:
        with self._lock:
            if not 0 <= instance_id < len(self._descriptors):
                return None
            return dataclasses.replace(self._descriptors[instance_id])

    def get_all(self) -> list[InstanceDescriptor]:
        with self._lock:
            return [dataclasses.replace(d) for d in self._descriptors]

    def ids(self, mask: InstanceStatus | None = None) -> list[int]:
        """Ids of descriptors whose status intersects `mask` (all if None)."""
        with self._lock:
            return [
                d.id
                for d in self._descriptors
                if mask is None or d.status & mask or (mask == InstanceStatus.INACTIVE and not d.status)
            ]

    def count(self, mask: InstanceStatus) -> int:
        return len(self.ids(mask))

    def all_in(self, mask: InstanceStatus) -> bool:
        with self._lock:
            return bool(self._descriptors) and all(d.status & mask for d in self._descriptors)

    def update(self, instance_id: int, **changes) -> InstanceDescriptor:
        """Set descriptor fields and return a copy of the result.

        Raises:
          IndexError: For an unknown id.
          AttributeError: For an unknown field.
        """
        with self._lock:
            descriptor = self._descriptors[instance_id]
            for name, value in changes.items():
                if not hasattr(descriptor, name):
                    raise AttributeError(f"InstanceDescriptor has no field {name!r}")
                setattr(descriptor, name, value)
            return dataclasses.replace(descriptor)

    def set_all_status(self, status: InstanceStatus):
        with self._lock:
            for d in self._descriptors:
                d.status = status

    # ----------------------------
    # SEGMENT TABLES
    # ----------------------------
    def attach_segments(self, segments: dict[str, Segment]):
        """Register live segments, keyed by kind and then by segment name."""
        with self._lock:
            for kind, segment in segments.items():
                self._segments[kind][segment.name] = segment

    def segment(self, kind: str, name: str) -> Segment | None:
        with self._lock:
            return self._segments[kind].get(name)

    def detach_segments(self, descriptor: InstanceDescriptor) -> dict[str, Segment]:
        """Remove and return the live segments of `descriptor`."""
        with self._lock:
            removed = {}
            for kind, name in descriptor.segment_names.items():
                segment = self._segments[kind].pop(name, None)
                if segment is not None:
                    removed[kind] = segment
            return removed

    def segment_count(self) -> int:
        with self._lock:
            return sum(len(table) for table in self._segments.values())
