"""Bounded-parallelism scheduler that evaluates and evolves a population.

This module runs one generation after another. For every generation it

  1) starts game/agent process pairs, never more than ``max_parallel`` at a
     time, each wired to three freshly allocated shared-memory segments,
  2) polls every running pair once per tick for completion and liveness,
  3) reaps finished pairs and releases their segments,
  4) once every instance has ended, appends the generation to
     ``report.csv``, breeds ``gen(N + 1)`` and loads it.

Instance lifecycle
------------------
::

    INACTIVE -> WAITING -> RUNNING -> FINISHED -> ENDED
                              |
                              +----> ERRORED  -> ERRENDED

- **FINISHED**: the game reported ``is_over``. Fitness is
  ``score * W_score + elapsed_time * W_time + level * W_level`` and both
  children are told to exit through the status segment.
- **ERRORED**: a child vanished without reporting completion, could not be
  started, stalled past the autokill timeout or was killed. The sibling is
  terminated.
- **ENDED / ERRENDED**: both children reaped and segments freed; the slot
  counts as free again.

Threading
---------
The loop runs on one worker thread (:meth:`InstanceScheduler.start`) or on
the caller's thread (:meth:`InstanceScheduler.run`). All descriptor and
segment-table access goes through the registry lock, which the worker drops
before spawning, waiting on children or sleeping. Stopping is cooperative:
:meth:`InstanceScheduler.stop_population` sets a flag checked on every pass,
and the worker terminates and reaps whatever is still alive before it
returns.

Example
-------
    >>> scheduler = InstanceScheduler(default_config(max_parallel=4, max_iterations=10))
    >>> scheduler.load_population("populations/asteroids")
    >>> scheduler.start()
    >>> scheduler.wait()
"""

# Builtin dependencies
from __future__ import annotations
import logging
import os
import threading
import time
from pathlib import Path

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core import population
from astromgr.core import process
from astromgr.core.config import SchedulerConfig, default_config
from astromgr.core.errors import GenerationError, PopulationError, SchedulerError, SegmentError
from astromgr.core.process import ProcessHandle
from astromgr.core.registry import (
    AWAITING_REAP,
    LIVE,
    TERMINAL,
    InstanceDescriptor,
    InstanceRegistry,
    InstanceStatus,
)
from astromgr.core.segments import SEGMENT_KINDS, Segment, StatusState

logger = logging.getLogger(__name__)


def compute_fitness(state: StatusState, weights: tuple[float, float, float]) -> float:
    """Scalar fitness of a finished game."""
    w_score, w_time, w_level = weights
    return state.score * w_score + state.elapsed_time * w_time + state.level * w_level


def free_segments(segments: dict[str, Segment]):
    for segment in segments.values():
        try:
            segment.free()
        except SegmentError as e:
            logger.error("%s", e)


class InstanceScheduler:
    """Owns the instance registry and the worker that drives it.

    Args:
      config: Run parameters; see :func:`~astromgr.core.config.default_config`.
    """

    def __init__(self, config: SchedulerConfig | None = None):
        self.config: SchedulerConfig = config if config is not None else default_config()
        self.registry = InstanceRegistry()
        self.population_dir: Path | None = None
        self.game_seed = 0
        self.iteration = 0
        self.generations_completed = 0
        self.peak_running = 0
        self.last_error: Exception | None = None

        self._rng = np.random.default_rng(self.config["seed"])
        self._processes: dict[int, tuple[ProcessHandle | None, ProcessHandle | None]] = {}
        self._reaping: set[int] = set()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False

    # ----------------------------
    # COMMANDS
    # ----------------------------
    def load_population(self, path: str | os.PathLike) -> int:
        """Load the latest generation under `path` and mark it WAITING.

        Returns:
          int: Number of instances loaded.

        Raises:
          SchedulerError: If a run is in progress.
          PopulationError: If nothing could be loaded.
        """
        if self.is_running():
            raise SchedulerError("cannot load a population while a run is in progress")
        return self._load(path)

    def configure(self, **overrides):
        """Replace run parameters before the next start."""
        if self.is_running():
            raise SchedulerError("cannot reconfigure a running scheduler")
        merged = dict(self.config)
        merged.update(overrides)
        self.config = default_config(**merged)
        if "seed" in overrides:
            self._rng = np.random.default_rng(self.config["seed"])

    def start(self):
        """Run the configured generations on a background thread.

        Raises:
          SchedulerError: If no population is loaded or a run is active.
        """
        self._check_startable()
        self._stop.clear()
        self._running = True
        self._thread = threading.Thread(target=self._worker, name="instance-scheduler", daemon=True)
        self._thread.start()

    def run(self):
        """Run the configured generations on the calling thread."""
        self._check_startable()
        self._stop.clear()
        self._running = True
        self._worker()

    def wait(self, timeout: float | None = None) -> bool:
        """Join the worker thread. Returns True once it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_running(self) -> bool:
        return self._running

    def stop_population(self) -> bool:
        """Cancel the run, terminate and reap every live instance.

        Returns:
          bool: False if no run was active.
        """
        if not self._running:
            return False
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        return True

    def kill_individual(self, instance_id: int) -> bool:
        """SIGTERM both children of a RUNNING instance and reap them.

        Returns:
          bool: False if the instance does not exist or is not RUNNING.
        """
        with self.registry.locked():
            descriptor = self.registry.get(instance_id)
            if descriptor is None or descriptor.status != InstanceStatus.RUNNING:
                return False
            game, agent = self._processes.pop(instance_id, (None, None))
            self._reaping.add(instance_id)
            self.registry.update(instance_id, status=InstanceStatus.ERRORED)
            for handle in (game, agent):
                if handle is not None:
                    handle.terminate()

        logger.info("instance %d killed", instance_id)
        self._release(descriptor, game, agent)
        return True

    def toggle_headless(self, instance_id: int) -> bool:
        """Flip the ``run_headless`` flag of a RUNNING instance.

        Returns:
          bool: False if the instance does not exist or is not RUNNING.
        """
        with self.registry.locked():
            descriptor = self.registry.get(instance_id)
            if descriptor is None or descriptor.status != InstanceStatus.RUNNING:
                return False
            segment = self.registry.segment("status", descriptor.shmem_status)
            if segment is None:
                return False
            headless = not segment.read().run_headless
            segment.write(run_headless=headless)
        logger.info("instance %d headless=%s", instance_id, headless)
        return True

    def get(self, instance_id: int) -> InstanceDescriptor | None:
        return self.registry.get(instance_id)

    def get_all(self) -> list[InstanceDescriptor]:
        return self.registry.get_all()

    def close(self):
        """Stop any run and release every resource still held."""
        self.stop_population()
        with self.registry.locked():
            leftovers = [self.registry.detach_segments(d) for d in self.registry.get_all()]
            self.registry.clear()
        for segments in leftovers:
            free_segments(segments)

    # ----------------------------
    # WORKER
    # ----------------------------
    def _check_startable(self):
        if self._running:
            raise SchedulerError("a run is already in progress")
        if len(self.registry) == 0 or self.population_dir is None:
            raise SchedulerError("no population loaded")

    def _load(self, path: str | os.PathLike) -> int:
        generation, models = population.load_population(path)
        with self.registry.locked():
            self.registry.load(models, generation)
            self.registry.set_all_status(InstanceStatus.WAITING)
        self.population_dir = Path(path)
        return len(models)

    def _worker(self):
        try:
            self._loop()
        except KeyboardInterrupt:
            self._stop.set()
            raise
        except Exception as e:
            self.last_error = e
            self._stop.set()
            logger.exception("scheduler stopped on an unexpected error")
        finally:
            try:
                self._drain()
            finally:
                self._running = False

    def _loop(self):
        config = self.config
        self.last_error = None
        self.game_seed = self._new_seed()

        for iteration in range(config["max_iterations"]):
            if self._stop.is_set():
                return
            self.iteration = iteration
            if config["epoch_size"] > 0 and iteration % config["epoch_size"] == 0:
                self.game_seed = self._new_seed()
                logger.info("epoch reseed: game seed %d", self.game_seed)

            with self.registry.locked():
                for instance_id in self.registry.ids():
                    self.registry.update(
                        instance_id,
                        status=InstanceStatus.WAITING,
                        game_seed=self.game_seed,
                        fitness=0.0,
                    )

            if not self._run_generation():
                return

            try:
                self._advance_generation()
            except (GenerationError, PopulationError) as e:
                self.last_error = e
                logger.error("generation step failed, stopping run: %s", e)
                return

    def _run_generation(self) -> bool:
        """Drive one generation to completion. False if stopped."""
        next_index = 0
        while not self._stop.is_set():
            next_index = self._start_pending(next_index)
            self._poll_running()
            self._reap()
            if self.registry.all_in(TERMINAL):
                return True
            self._stop.wait(self.config["tick_interval"])
        return False

    def _advance_generation(self):
        descriptors = self.registry.get_all()
        if self.population_dir is None:
            raise SchedulerError("no population loaded")
        population.write_report(self.population_dir, descriptors)
        population.next_generation(
            self.population_dir,
            descriptors,
            elitism_count=self.config["elitism_count"],
            eta=self.config["crossover_index"],
            mutation_rate=self.config["mutation_rate"],
            mutation_stddev=self.config["mutation_stddev"],
            include_elites_in_selection=self.config["include_elites_in_selection"],
            rng=self._rng,
        )
        self.generations_completed += 1
        best = max(d.fitness for d in descriptors)
        logger.info("generation %d done, best fitness %f", descriptors[0].generation, best)
        self._load(self.population_dir)

    def _new_seed(self) -> int:
        return int(self._rng.integers(0, 2**32))

    # ----------------------------
    # STARTING
    # ----------------------------
    def _start_pending(self, next_index: int) -> int:
        while not self._stop.is_set():
            with self.registry.locked():
                if next_index >= len(self.registry):
                    break
                if self.registry.count(LIVE) >= self.config["max_parallel"]:
                    break
                descriptor = self.registry.get(next_index)
            next_index += 1
            if descriptor is None or descriptor.status != InstanceStatus.WAITING:
                continue
            self._start_instance(descriptor)
            self.peak_running = max(self.peak_running, self.registry.count(InstanceStatus.RUNNING))
        return next_index

    def _start_instance(self, descriptor: InstanceDescriptor):
        instance_id = descriptor.id
        segments: dict[str, Segment] = {}
        try:
            for kind, name in descriptor.segment_names.items():
                segments[kind] = SEGMENT_KINDS[kind].allocate(name)
            segments["status"].write(manager_alive=True, run_headless=True)
        except SegmentError as e:
            logger.error("instance %d: %s", instance_id, e)
            free_segments(segments)
            self._fail_start(instance_id, None)
            return
        self.registry.attach_segments(segments)

        names = [descriptor.shmem_input, descriptor.shmem_output, descriptor.shmem_status]
        game_argv = [*self.config["game_command"], "-m", *names, "-r", str(descriptor.game_seed)]
        agent_argv = [*self.config["agent_command"], "-m", *names, "-l", descriptor.model_path]

        try:
            game = process.start(game_argv)
        except OSError as e:
            logger.error("instance %d: cannot start game: %s", instance_id, e)
            self._fail_start(instance_id, None)
            return
        try:
            agent = process.start(agent_argv)
        except OSError as e:
            logger.error("instance %d: cannot start agent: %s", instance_id, e)
            game.terminate()
            self._fail_start(instance_id, game)
            return

        with self.registry.locked():
            self._processes[instance_id] = (game, agent)
            self.registry.update(
                instance_id,
                status=InstanceStatus.RUNNING,
                game_pid=game.pid,
                agent_pid=agent.pid,
                score_value=0,
                score_time=time.monotonic(),
            )
        logger.info("instance %d running (game %d, agent %d)", instance_id, game.pid, agent.pid)

    def _fail_start(self, instance_id: int, game: ProcessHandle | None):
        with self.registry.locked():
            self._processes[instance_id] = (game, None)
            self.registry.update(instance_id, status=InstanceStatus.ERRORED)

    # ----------------------------
    # POLLING
    # ----------------------------
    def _poll_running(self):
        for instance_id in self.registry.ids(InstanceStatus.RUNNING):
            with self.registry.locked():
                descriptor = self.registry.get(instance_id)
                if descriptor is None or descriptor.status != InstanceStatus.RUNNING:
                    continue
                self._poll_instance(descriptor)

    def _poll_instance(self, descriptor: InstanceDescriptor):
        # registry lock held by the caller
        instance_id = descriptor.id
        game, agent = self._processes[instance_id]
        segment = self.registry.segment("status", descriptor.shmem_status)
        alive = game is not None and agent is not None and game.probe() and agent.probe()
        state = segment.read() if segment is not None else None

        if state is not None and state.is_over:
            fitness = compute_fitness(state, self.config["fitness_weights"])
            segment.write(game_exit=True, agent_exit=True)
            self.registry.update(instance_id, status=InstanceStatus.FINISHED, fitness=fitness)
            logger.info("instance %d finished, fitness %f", instance_id, fitness)
            return

        if not alive or state is None:
            logger.warning("instance %d lost a child process", instance_id)
            self._error(descriptor, game, agent)
            return

        timeout = self.config["autokill_timeout"]
        if timeout > 0:
            now = time.monotonic()
            if state.score != descriptor.score_value:
                self.registry.update(instance_id, score_value=state.score, score_time=now)
            elif now - descriptor.score_time >= timeout:
                logger.warning("instance %d stalled for %.0fs, killing", instance_id, timeout)
                self._error(descriptor, game, agent)

    def _error(self, descriptor: InstanceDescriptor, game: ProcessHandle | None, agent: ProcessHandle | None):
        segment = self.registry.segment("status", descriptor.shmem_status)
        if segment is not None:
            segment.write(game_exit=True, agent_exit=True)
        for handle in (game, agent):
            if handle is not None:
                handle.terminate()
        self.registry.update(descriptor.id, status=InstanceStatus.ERRORED)

    # ----------------------------
    # REAPING
    # ----------------------------
    def _reap(self):
        for instance_id in self.registry.ids(AWAITING_REAP):
            with self.registry.locked():
                if instance_id in self._reaping:
                    continue
                descriptor = self.registry.get(instance_id)
                if descriptor is None or not descriptor.status & AWAITING_REAP:
                    continue
                game, agent = self._processes.pop(instance_id, (None, None))
                self._reaping.add(instance_id)
            self._release(descriptor, game, agent)

    def _release(self, descriptor: InstanceDescriptor, game: ProcessHandle | None, agent: ProcessHandle | None):
        """Reap both children, free the segments and mark the instance ended."""
        grace = self.config["exit_grace_period"]
        for handle in (game, agent):
            if handle is not None:
                handle.stop(grace)

        segments = self.registry.detach_segments(descriptor)
        free_segments(segments)

        with self.registry.locked():
            self._reaping.discard(descriptor.id)
            current = self.registry.get(descriptor.id)
            if current is None or current.model_path != descriptor.model_path:
                return
            ended = InstanceStatus.ENDED if current.status & InstanceStatus.FINISHED else InstanceStatus.ERRENDED
            self.registry.update(descriptor.id, status=ended)
        logger.debug("instance %d %s", descriptor.id, ended.name)

    def _drain(self):
        """Force every live instance to exit and reap it."""
        if self._stop.is_set():
            with self.registry.locked():
                for descriptor in self.registry.get_all():
                    if descriptor.status == InstanceStatus.RUNNING:
                        game, agent = self._processes.get(descriptor.id, (None, None))
                        self._error(descriptor, game, agent)
                    elif descriptor.status == InstanceStatus.WAITING:
                        self.registry.update(descriptor.id, status=InstanceStatus.ERRORED)
        self._reap()

        # a concurrent kill may still be reaping its pair
        while True:
            with self.registry.locked():
                if not self._reaping:
                    return
            time.sleep(0.01)
