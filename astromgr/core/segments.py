"""Typed shared-memory segments connecting the manager, game and agent.

Every running instance owns three named segments:

  * **Input**: control bits written by the agent and read by the game.
  * **Output**: normalized sensor values written by the game and read by the
    agent.
  * **Status**: liveness flags, exit controls and game telemetry shared by
    all three processes.

Layout
------
Each segment is a POSIX shared-memory block
(:class:`multiprocessing.shared_memory.SharedMemory`) holding exactly one
record of a numpy structured dtype. Processes access the record through an
``np.ndarray`` of shape ``(1,)`` mapped over ``SharedMemory.buf``, so there is
no serialization step; field order and alignment are fixed by the dtype.

Locking
-------
A segment's lock is an ``flock`` on a lock file named after the segment
(``<tmp>/astromgr/<name>.lock``), created together with the segment by
:meth:`Segment.allocate` and removed by :meth:`Segment.free`. ``flock`` locks
are per open file description, so every handle opens its own descriptor and
additionally serializes its own threads with a ``threading.Lock``.

Ownership
---------
Only the manager allocates and frees segments. Child processes
:meth:`~Segment.connect` and :meth:`~Segment.disconnect`. Every field has one
writer role; :meth:`Segment.write` refuses fields the handle's role does not
own, which keeps the single-writer discipline part of the interface.

Example
-------
>>> status = StatusSegment.allocate("model_0s")
>>> status.write(manager_alive=True, run_headless=True)
>>> status.read().is_over
False
>>> status.free()
"""

# Builtin dependencies
from __future__ import annotations
import enum
import fcntl
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from multiprocessing.shared_memory import SharedMemory
from pathlib import Path
from typing import ClassVar

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core.errors import SegmentAccessError, SegmentError

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 249  # leaves room for generated suffixes
LOCK_DIR = Path(tempfile.gettempdir()) / "astromgr"

_NAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")


class Role(enum.Enum):
    MANAGER = "manager"
    GAME = "game"
    AGENT = "agent"


def validate_name(name: str) -> bool:
    """Return True if `name` is usable as a segment name.

    Names are alphanumeric plus underscore and at most
    :data:`MAX_NAME_LENGTH` characters long.
    """
    if not name or len(name) > MAX_NAME_LENGTH:
        return False
    return _NAME_PATTERN.fullmatch(name) is not None


def derive_segment_names(model_path: str | os.PathLike) -> tuple[str, str, str]:
    """Derive the (input, output, status) segment names for a model file.

    The model file name is stripped of its extension and suffixed with
    ``i``, ``o`` and ``s``: ``gen3/model_7.fnnm`` -> ``model_7i``,
    ``model_7o``, ``model_7s``.
    """
    stem = Path(model_path).name.split(".", 1)[0]
    return f"{stem}i", f"{stem}o", f"{stem}s"


def lock_path(name: str) -> Path:
    return LOCK_DIR / f"{name}.lock"


# ----------------------------
# SNAPSHOTS
# ----------------------------
@dataclass(frozen=True)
class InputState:
    forward: bool
    left: bool
    right: bool
    fire: bool


@dataclass(frozen=True)
class OutputState:
    rotation: float
    velocity_x: float
    velocity_y: float
    obstacle_distance: float
    obstacle_bearing: float


@dataclass(frozen=True)
class StatusState:
    game_alive: bool
    manager_alive: bool
    agent_alive: bool
    game_exit: bool
    agent_exit: bool
    is_over: bool
    is_paused: bool
    run_headless: bool
    score: int
    level: int
    elapsed_time: int


# ----------------------------
# SEGMENTS
# ----------------------------
class Segment:
    """Handle to one named shared-memory segment.

    Use :meth:`allocate` (manager) or :meth:`connect` (children) rather than
    the constructor.
    """

    DTYPE: ClassVar[np.dtype]
    STATE: ClassVar[type]
    OWNERS: ClassVar[dict[str, Role]]

    def __init__(self, name: str, shm: SharedMemory, lock_fd: int, role: Role, owner: bool):
        self.name = name
        self.role = role
        self.owner = owner
        self._shm: SharedMemory | None = shm
        self._lock_fd = lock_fd
        self._thread_lock = threading.Lock()
        self._record: np.ndarray | None = np.ndarray(shape=(1,), dtype=self.DTYPE, buffer=shm.buf)

    @classmethod
    def allocate(cls, name: str) -> Segment:
        """Create the segment, zero-fill it and initialize its lock.

        A stale segment of the same name (left over by a crashed run) is
        unlinked and replaced.

        Args:
          name: Segment name, see :func:`validate_name`.

        Returns:
          Segment: An owning handle with role :attr:`Role.MANAGER`.

        Raises:
          SegmentError: If the name is invalid or the OS refuses to create
            the shared-memory object or its lock file.
        """
        if not validate_name(name):
            raise SegmentError(f"invalid segment name: {name!r}")

        size = cls.DTYPE.itemsize
        try:
            try:
                shm = SharedMemory(name=name, create=True, size=size)
            except FileExistsError:
                logger.warning("replacing stale shared memory segment %s", name)
                old = SharedMemory(name=name, track=False)
                old.close()
                old.unlink()
                shm = SharedMemory(name=name, create=True, size=size)
        except OSError as e:
            raise SegmentError(f"cannot create segment {name}: {e}") from e

        try:
            LOCK_DIR.mkdir(parents=True, exist_ok=True)
            lock_fd = os.open(lock_path(name), os.O_RDWR | os.O_CREAT, 0o666)
        except OSError as e:
            shm.close()
            shm.unlink()
            raise SegmentError(f"cannot create lock for segment {name}: {e}") from e

        segment = cls(name, shm, lock_fd, Role.MANAGER, owner=True)
        segment.init()
        logger.debug("allocated %s segment %s (%d bytes)", cls.__name__, name, size)
        return segment

    @classmethod
    def connect(cls, name: str, role: Role = Role.MANAGER) -> Segment:
        """Map an existing segment without re-initializing it.

        Raises:
          SegmentError: If the segment (or its lock) was never allocated.
        """
        if not validate_name(name):
            raise SegmentError(f"invalid segment name: {name!r}")
        try:
            shm = SharedMemory(name=name, track=False)
        except OSError as e:
            raise SegmentError(f"cannot connect to segment {name}: {e}") from e
        if shm.size < cls.DTYPE.itemsize:
            shm.close()
            raise SegmentError(f"segment {name} is smaller than a {cls.__name__} record")

        try:
            lock_fd = os.open(lock_path(name), os.O_RDWR)
        except OSError as e:
            shm.close()
            raise SegmentError(f"segment {name} has no lock: {e}") from e
        return cls(name, shm, lock_fd, role, owner=False)

    @property
    def closed(self) -> bool:
        return self._shm is None

    def _require_open(self) -> np.ndarray:
        if self._record is None:
            raise SegmentError(f"segment {self.name} is closed")
        return self._record

    def lock(self):
        self._require_open()
        self._thread_lock.acquire()
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_EX)
        except OSError:
            self._thread_lock.release()
            raise

    def unlock(self):
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            self._thread_lock.release()

    def __enter__(self) -> Segment:
        self.lock()
        return self

    def __exit__(self, *exc):
        self.unlock()
        return False

    def init(self):
        """Zero every field of the record."""
        with self:
            self._require_open()[...] = np.zeros(1, dtype=self.DTYPE)

    def read(self):
        """Take a consistent snapshot of every field under the lock."""
        with self:
            record = self._require_open()
            values = {field: record[field][0].item() for field in self.DTYPE.names}
        return self.STATE(**values)

    def write(self, **fields):
        """Write a burst of fields under a single lock acquisition.

        Raises:
          KeyError: If a field does not exist in this segment.
          SegmentAccessError: If the handle's role does not own a field.
        """
        for field in fields:
            if field not in self.OWNERS:
                raise KeyError(f"{type(self).__name__} has no field {field!r}")
            if self.OWNERS[field] is not self.role:
                raise SegmentAccessError(
                    f"{self.role.value} may not write {type(self).__name__}.{field}"
                )
        with self:
            record = self._require_open()
            for field, value in fields.items():
                record[field] = value

    def disconnect(self):
        """Unmap the segment for this process only."""
        if self._shm is None:
            return
        # numpy views must be dropped before the mapping can be closed
        self._record = None
        self._shm.close()
        self._shm = None
        os.close(self._lock_fd)

    def free(self):
        """Unmap, remove the lock and unlink the OS object.

        Only the allocating handle may free a segment, exactly once.

        Raises:
          SegmentError: If the handle does not own the segment or it is
            already gone.
        """
        if not self.owner:
            raise SegmentError(f"segment {self.name} is not owned by this handle")
        if self._shm is None:
            raise SegmentError(f"segment {self.name} was already freed")

        shm = self._shm
        self.disconnect()
        try:
            lock_path(self.name).unlink()
        except FileNotFoundError:
            logger.warning("lock file for segment %s was already removed", self.name)
        try:
            shm.unlink()
        except OSError as e:
            raise SegmentError(f"cannot unlink segment {self.name}: {e}") from e
        logger.debug("freed segment %s", self.name)


class InputSegment(Segment):
    """Agent -> game control bits."""

    DTYPE = np.dtype(
        [("forward", "?"), ("left", "?"), ("right", "?"), ("fire", "?")],
        align=True,
    )
    STATE = InputState
    OWNERS = {name: Role.AGENT for name in ("forward", "left", "right", "fire")}


class OutputSegment(Segment):
    """Game -> agent sensors, each normalized to roughly [-1, 1]."""

    DTYPE = np.dtype(
        [
            ("rotation", "<f4"),
            ("velocity_x", "<f4"),
            ("velocity_y", "<f4"),
            ("obstacle_distance", "<f4"),
            ("obstacle_bearing", "<f4"),
        ],
        align=True,
    )
    STATE = OutputState
    OWNERS = {name: Role.GAME for name in DTYPE.names}


class StatusSegment(Segment):
    """Liveness, exit controls and telemetry of one instance."""

    DTYPE = np.dtype(
        [
            ("game_alive", "?"),
            ("manager_alive", "?"),
            ("agent_alive", "?"),
            ("game_exit", "?"),
            ("agent_exit", "?"),
            ("is_over", "?"),
            ("is_paused", "?"),
            ("run_headless", "?"),
            ("score", "<i4"),
            ("level", "<i4"),
            ("elapsed_time", "<i8"),
        ],
        align=True,
    )
    STATE = StatusState
    OWNERS = {
        "game_alive": Role.GAME,
        "manager_alive": Role.MANAGER,
        "agent_alive": Role.AGENT,
        "game_exit": Role.MANAGER,
        "agent_exit": Role.MANAGER,
        "is_over": Role.GAME,
        "is_paused": Role.GAME,
        "run_headless": Role.MANAGER,
        "score": Role.GAME,
        "level": Role.GAME,
        "elapsed_time": Role.GAME,
    }


SEGMENT_KINDS: dict[str, type[Segment]] = {
    "input": InputSegment,
    "output": OutputSegment,
    "status": StatusSegment,
}
