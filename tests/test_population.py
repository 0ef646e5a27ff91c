import pytest

from astromgr.core import config as cfg
from astromgr.core.errors import GenerationError, PopulationError
from astromgr.core.model import Activation, deserialize, generate_model, serialize
from astromgr.core.population import (
    REPORT_COLUMNS,
    create_population,
    find_latest_generation,
    generation_dir,
    list_models,
    load_population,
    model_path,
    next_generation,
    read_report,
    write_report,
)
from astromgr.core.registry import InstanceDescriptor, InstanceStatus


def evaluated(paths, fitness, generation=0):
    return [
        InstanceDescriptor(
            id=i,
            model_path=str(path),
            generation=generation,
            status=InstanceStatus.ENDED,
            fitness=f,
            game_seed=99,
        )
        for i, (path, f) in enumerate(zip(paths, fitness))
    ]


def test_create_population(tmp_path, rng):
    paths = create_population(tmp_path / "pop", 3, [8, 6], rng=rng)
    assert [p.name for p in paths] == ["model_0.fnnm", "model_1.fnnm", "model_2.fnnm"]

    model = deserialize(paths[0])
    assert model.neuron_counts == [cfg.INPUT_LAYER_SIZE, 8, 6, cfg.OUTPUT_LAYER_SIZE]
    assert model.activations == [Activation.RELU, Activation.RELU, Activation.SIGMOID]


@pytest.mark.parametrize("size, hidden", [(0, [4]), (2, []), (2, [4, 0])])
def test_create_population_rejects_bad_arguments(tmp_path, rng, size, hidden):
    with pytest.raises(PopulationError):
        create_population(tmp_path / "pop", size, hidden, rng=rng)


def test_create_population_refuses_existing(tmp_path, rng):
    create_population(tmp_path / "pop", 1, [4], rng=rng)
    with pytest.raises(PopulationError):
        create_population(tmp_path / "pop", 1, [4], rng=rng)
    assert len(create_population(tmp_path / "pop", 2, [4], rng=rng, overwrite=True)) == 2


def test_latest_generation(tmp_path, population_root):
    assert find_latest_generation(population_root) == 0
    (population_root / "gen2").mkdir()
    (population_root / "gen10").mkdir()
    (population_root / "genx").mkdir()
    (population_root / "gen7").write_text("not a directory")
    assert find_latest_generation(population_root) == 10
    with pytest.raises(PopulationError):
        find_latest_generation(tmp_path / "missing")


def test_load_population_skips_corrupt_models(population_root):
    gen0 = generation_dir(population_root, 0)
    (gen0 / "model_1.fnnm").write_bytes(b"garbage")
    (gen0 / "notes.txt").write_text("ignored")

    generation, models = load_population(population_root)
    assert generation == 0
    assert [m.name for m in models] == ["model_0.fnnm", "model_2.fnnm", "model_3.fnnm"]


def test_load_population_without_models(tmp_path):
    (tmp_path / "pop" / "gen0").mkdir(parents=True)
    with pytest.raises(PopulationError):
        load_population(tmp_path / "pop")


def test_list_models_orders_numerically(tmp_path, rng):
    model = generate_model([2, 2], [Activation.SIGMOID], rng=rng)
    for i in (10, 2, 1):
        serialize(model_path(tmp_path, i), model)
    assert [p.name for p in list_models(tmp_path)] == ["model_1.fnnm", "model_2.fnnm", "model_10.fnnm"]


def test_report_rows(population_root):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [1.0, 2.5, 0.0, 4.0])
    descriptors[2].status = InstanceStatus.ERRENDED

    write_report(population_root, descriptors)
    write_report(population_root, descriptors)

    header = (population_root / cfg.REPORT_FILE_NAME).read_text().splitlines()[0]
    assert header == ",".join(REPORT_COLUMNS)
    rows = read_report(population_root)
    assert len(rows) == 8
    assert rows[1] == {
        "instanceID": "1",
        "exitStatus": "ENDED",
        "modelPath": str(models[1]),
        "generationID": "0",
        "gameSeed": "99",
        "fitness": "2.500000",
    }
    assert rows[2]["exitStatus"] == "ERRENDED"


def test_report_write_failure(tmp_path):
    with pytest.raises(GenerationError):
        write_report(tmp_path / "missing", evaluated([tmp_path / "m.fnnm"], [1.0]))


def test_next_generation_copies_elites(population_root, rng):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [1.0, 7.0, 3.0, 5.0])

    gen_dir = next_generation(population_root, descriptors, elitism_count=2, rng=rng)
    assert gen_dir == generation_dir(population_root, 1)

    children = list_models(gen_dir)
    assert len(children) == 4
    assert children[0].read_bytes() == models[1].read_bytes()
    assert children[1].read_bytes() == models[3].read_bytes()
    for child in children[2:]:
        model = deserialize(child)
        assert model.neuron_counts == deserialize(models[0]).neuron_counts

    generation, loaded = load_population(population_root)
    assert generation == 1
    assert len(loaded) == 4


def test_next_generation_clamps_elitism(population_root, rng):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [4.0, 3.0, 2.0, 1.0])

    gen_dir = next_generation(population_root, descriptors, elitism_count=10, rng=rng)
    children = list_models(gen_dir)
    assert len(children) == 4
    for child, parent in zip(children[:3], models[:3]):
        assert child.read_bytes() == parent.read_bytes()


def test_next_generation_with_zero_fitness(population_root, rng):
    _, models = load_population(population_root)
    gen_dir = next_generation(population_root, evaluated(models, [0.0] * 4), elitism_count=0, rng=rng)
    assert len(list_models(gen_dir)) == 4


def test_next_generation_without_elites_in_pool(population_root, rng):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [9.0, 1.0, 1.0, 1.0])
    gen_dir = next_generation(
        population_root, descriptors, elitism_count=1, include_elites_in_selection=False, rng=rng
    )
    assert len(list_models(gen_dir)) == 4


def test_unbreedable_parents_write_nothing(population_root, rng):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [1.0, 2.0, 3.0, 4.0])
    for path in models:
        path.write_bytes(b"corrupted after evaluation")

    with pytest.raises(GenerationError):
        next_generation(population_root, descriptors, elitism_count=0, rng=rng)
    assert not generation_dir(population_root, 1).exists()
    assert sorted(p.name for p in population_root.iterdir()) == ["gen0"]


def test_failed_generation_leaves_no_partial_directory(population_root, rng):
    _, models = load_population(population_root)
    descriptors = evaluated(models, [1.0, 2.0, 3.0, 4.0])
    # the elite survives but every parent left in the pool is unreadable
    for path in models[:3]:
        path.write_bytes(b"corrupted after evaluation")

    with pytest.raises(GenerationError):
        next_generation(
            population_root, descriptors, elitism_count=1, include_elites_in_selection=False, rng=rng
        )
    assert not generation_dir(population_root, 1).exists()
    assert sorted(p.name for p in population_root.iterdir()) == ["gen0"]
    assert load_population(population_root) == (0, [models[3]])


def test_next_generation_replaces_stale_children(population_root, rng):
    _, models = load_population(population_root)
    gen1 = generation_dir(population_root, 1)
    gen1.mkdir()
    model_path(gen1, 9).write_bytes(b"left over")

    next_generation(population_root, evaluated(models, [1.0] * 4), elitism_count=1, rng=rng)
    assert [p.name for p in list_models(gen1)] == [f"model_{i}.fnnm" for i in range(4)]
