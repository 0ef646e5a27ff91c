import threading
import time

import pytest

from conftest import game_command
from astromgr.core.config import FITNESS_WEIGHT_LEVEL, FITNESS_WEIGHT_SCORE, FITNESS_WEIGHT_TIME
from astromgr.core.errors import GenerationError, SchedulerError, SegmentError
from astromgr.core.population import generation_dir, list_models, read_report
from astromgr.core.registry import TERMINAL, InstanceStatus
from astromgr.core.scheduler import InstanceScheduler, compute_fitness
from astromgr.core.segments import StatusSegment, StatusState


def wait_for(predicate, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def status_state(**values):
    fields = dict.fromkeys(
        ["game_alive", "manager_alive", "agent_alive", "game_exit", "agent_exit", "is_over", "is_paused", "run_headless"],
        False,
    )
    fields.update(score=0, level=0, elapsed_time=0)
    fields.update(values)
    return StatusState(**fields)


def test_compute_fitness():
    weights = (FITNESS_WEIGHT_SCORE, FITNESS_WEIGHT_TIME, FITNESS_WEIGHT_LEVEL)
    state = status_state(score=120, level=4, elapsed_time=33)
    assert compute_fitness(state, weights) == 120 * 0.5 + 33 * 0.2 + 4 * 0.3


def test_generation_respects_parallel_cap(make_scheduler, population_root):
    scheduler = make_scheduler(max_parallel=2, max_iterations=1, elitism_count=1)

    observed = []
    done = threading.Event()

    def monitor():
        while not done.is_set():
            observed.append(scheduler.registry.count(InstanceStatus.RUNNING))
            time.sleep(0.005)

    watcher = threading.Thread(target=monitor)
    watcher.start()
    try:
        scheduler.run()
    finally:
        done.set()
        watcher.join()

    assert scheduler.last_error is None
    assert max(observed) <= 2
    assert scheduler.peak_running == 2
    assert scheduler.generations_completed == 1

    rows = read_report(population_root)
    assert len(rows) == 4
    assert {row["exitStatus"] for row in rows} == {"ENDED"}
    assert {row["generationID"] for row in rows} == {"0"}
    expected = 10 * FITNESS_WEIGHT_SCORE + 3 * FITNESS_WEIGHT_TIME + 1 * FITNESS_WEIGHT_LEVEL
    assert all(float(row["fitness"]) == pytest.approx(expected) for row in rows)

    assert len(list_models(generation_dir(population_root, 1))) == 4
    assert scheduler.registry.segment_count() == 0
    with pytest.raises(SegmentError):
        StatusSegment.connect("model_0s")

    # the next generation is loaded and ready
    descriptors = scheduler.get_all()
    assert len(descriptors) == 4
    assert {d.generation for d in descriptors} == {1}
    assert {d.status for d in descriptors} == {InstanceStatus.WAITING}


def test_multiple_iterations_append_to_report(make_scheduler, population_root):
    scheduler = make_scheduler(max_parallel=4, max_iterations=2, epoch_size=1, game_command=game_command(duration=0.1))
    scheduler.run()

    assert scheduler.last_error is None
    rows = read_report(population_root)
    assert len(rows) == 8
    assert [row["generationID"] for row in rows] == ["0"] * 4 + ["1"] * 4
    assert len(list_models(generation_dir(population_root, 2))) == 4


def seeds_by_generation(root):
    seeds = {}
    for row in read_report(root):
        seeds.setdefault(row["generationID"], set()).add(row["gameSeed"])
    return seeds


def test_epoch_reseeds_game(make_scheduler, population_root):
    scheduler = make_scheduler(max_parallel=4, max_iterations=3, epoch_size=2, game_command=game_command(duration=0.1))
    scheduler.run()

    assert scheduler.last_error is None
    seeds = seeds_by_generation(population_root)
    assert sorted(seeds) == ["0", "1", "2"]
    assert all(len(group) == 1 for group in seeds.values())
    assert seeds["0"] == seeds["1"]
    assert seeds["2"] != seeds["0"]
    assert seeds["2"] == {str(scheduler.game_seed)}


def test_zero_epoch_keeps_one_seed(make_scheduler, population_root):
    scheduler = make_scheduler(max_parallel=4, max_iterations=3, epoch_size=0, game_command=game_command(duration=0.1))
    scheduler.run()

    assert scheduler.last_error is None
    seeds = seeds_by_generation(population_root)
    assert sorted(seeds) == ["0", "1", "2"]
    assert set.union(*seeds.values()) == {str(scheduler.game_seed)}


def test_crashed_game_is_errended(make_scheduler, population_root):
    scheduler = make_scheduler(game_command=game_command(mode="crash", duration=0.1))
    scheduler.run()

    rows = read_report(population_root)
    assert {row["exitStatus"] for row in rows} == {"ERRENDED"}
    assert {float(row["fitness"]) for row in rows} == {0.0}
    assert len(list_models(generation_dir(population_root, 1))) == 4
    assert scheduler.registry.segment_count() == 0


def test_unstartable_game_is_errended(make_scheduler, population_root, tmp_path):
    scheduler = make_scheduler(game_command=[str(tmp_path / "no-such-game")])
    scheduler.run()

    rows = read_report(population_root)
    assert len(rows) == 4
    assert {row["exitStatus"] for row in rows} == {"ERRENDED"}
    assert scheduler.registry.segment_count() == 0


def test_autokill_stalled_instances(make_scheduler, population_root):
    scheduler = make_scheduler(
        max_parallel=4,
        autokill_timeout=0.3,
        game_command=game_command(mode="hang"),
    )
    scheduler.run()

    rows = read_report(population_root)
    assert {row["exitStatus"] for row in rows} == {"ERRENDED"}


def test_kill_toggle_and_stop(make_scheduler, population_root):
    scheduler = make_scheduler(max_parallel=2, game_command=game_command(mode="hang"))
    scheduler.start()
    try:
        assert wait_for(lambda: scheduler.registry.count(InstanceStatus.RUNNING) == 2)
        assert scheduler.is_running()

        with pytest.raises(SchedulerError):
            scheduler.load_population(population_root)
        with pytest.raises(SchedulerError):
            scheduler.start()

        d = scheduler.get(1)
        status = scheduler.registry.segment("status", d.shmem_status)
        assert status.read().run_headless
        assert scheduler.toggle_headless(1)
        assert not status.read().run_headless
        assert scheduler.toggle_headless(1)
        assert status.read().run_headless

        assert scheduler.kill_individual(0)
        assert scheduler.get(0).status == InstanceStatus.ERRENDED
        assert not scheduler.kill_individual(0)
        assert not scheduler.toggle_headless(0)
        assert not scheduler.kill_individual(99)

        # the freed slot is reused by the next waiting instance
        assert wait_for(lambda: scheduler.get(2).status == InstanceStatus.RUNNING)
    finally:
        assert scheduler.stop_population()

    assert scheduler.wait(10)
    assert not scheduler.is_running()
    assert all(d.status & TERMINAL for d in scheduler.get_all())
    assert scheduler.registry.segment_count() == 0
    assert not (population_root / "report.csv").exists()
    assert not scheduler.stop_population()


def test_start_requires_population():
    scheduler = InstanceScheduler()
    with pytest.raises(SchedulerError):
        scheduler.start()
    with pytest.raises(SchedulerError, match="no population loaded"):
        scheduler._advance_generation()


def test_configure(make_scheduler):
    scheduler = make_scheduler()
    scheduler.configure(max_parallel=0, elitism_count=2)
    assert scheduler.config["max_parallel"] == 1
    assert scheduler.config["elitism_count"] == 2
    with pytest.raises(KeyError):
        scheduler.configure(colour="red")


def test_generation_failure_stops_run(make_scheduler, population_root):
    # an unwritable report makes the generation step fail
    (population_root / "report.csv").mkdir()
    scheduler = make_scheduler(max_parallel=4, max_iterations=3, game_command=game_command(duration=0.1))
    scheduler.run()

    assert isinstance(scheduler.last_error, GenerationError)
    assert scheduler.iteration == 0
    assert scheduler.generations_completed == 0
    assert not generation_dir(population_root, 1).exists()
    assert not scheduler.is_running()
    assert scheduler.registry.segment_count() == 0


def test_unexpected_error_drains_instances(make_scheduler, population_root, monkeypatch):
    def broken_fitness(state, weights):
        raise RuntimeError("fitness exploded")

    monkeypatch.setattr("astromgr.core.scheduler.compute_fitness", broken_fitness)
    scheduler = make_scheduler(max_parallel=2, game_command=game_command(duration=0.1))
    scheduler.run()

    assert isinstance(scheduler.last_error, RuntimeError)
    assert not scheduler.is_running()
    assert all(d.status & TERMINAL for d in scheduler.get_all())
    assert scheduler.registry.segment_count() == 0
    assert scheduler.generations_completed == 0
    assert not (population_root / "report.csv").exists()
