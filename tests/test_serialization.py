"""
Tests for trainer checkpoints.

A checkpoint holds the ensembles and the prediction cache; restoring it into a
fresh trainer must reproduce the stored state bit for bit and continue
training exactly as an uninterrupted run would.
"""

import io
import struct
import sys
from pathlib import Path

import numpy as np
import pytest
from sklearn.datasets import make_classification, make_regression

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gboost.boosting import GradientBoost
from gboost.params import LossFunction, Representation, TreeBuilder
from gboost.problems import ClassificationProblem, MultivariateRegressionProblem, RegressionProblem


def saved_bytes(booster):
    stream = io.BytesIO()
    booster.save(stream)
    return stream.getvalue()


def restored(data, **params):
    booster = GradientBoost(**params)
    booster.load(io.BytesIO(data))
    return booster


@pytest.fixture
def multiclass_problem():
    X, y = make_classification(n_samples=80, n_features=5, n_informative=3, n_classes=3,
                               n_clusters_per_class=1, random_state=0)
    return ClassificationProblem(X, y)


def test_round_trip_is_bit_identical(multiclass_problem):
    booster = GradientBoost(iterations_count=10, subsample=0.6, max_tree_depth=3, random_state=1)
    for _ in range(4):
        booster.train_step(multiclass_problem)
    data = saved_bytes(booster)

    copy = restored(data)

    assert saved_bytes(copy) == data
    assert len(copy.ensembles) == 3
    assert copy.iteration == 4
    np.testing.assert_array_equal(copy.predict_cache.values, booster.predict_cache.values)
    np.testing.assert_array_equal(copy.predict_cache.steps, booster.predict_cache.steps)
    for original, loaded in zip(booster.ensembles[1][2].iter_nodes(),
                                copy.ensembles[1][2].iter_nodes()):
        assert original.feature == loaded.feature
        assert original.threshold == loaded.threshold
        if original.is_leaf:
            np.testing.assert_array_equal(original.value, loaded.value)


def test_stale_cache_steps_survive_round_trip(multiclass_problem):
    booster = GradientBoost(iterations_count=10, subsample=0.3, random_state=2)
    for _ in range(3):
        booster.train_step(multiclass_problem)

    copy = restored(saved_bytes(booster))

    # with 30% row sampling some rows were not refreshed by the last step
    assert copy.predict_cache.steps.min() < copy.predict_cache.steps.max()
    np.testing.assert_array_equal(copy.predict_cache.steps, booster.predict_cache.steps)


@pytest.mark.parametrize("tree_builder", [TreeBuilder.FULL, TreeBuilder.MULTI_FAST_HIST])
def test_resumed_training_matches_uninterrupted_run(tree_builder):
    X, y = make_regression(n_samples=70, n_features=4, random_state=3)
    problem = RegressionProblem(X, y)
    params = dict(loss_function=LossFunction.L2, iterations_count=6, subsample=1.0,
                  subfeature=1.0, max_tree_depth=3, tree_builder=tree_builder, random_state=4)

    uninterrupted = GradientBoost(**params).train(problem)

    first_half = GradientBoost(**params)
    for _ in range(3):
        first_half.train_step(problem)
    resumed = restored(saved_bytes(first_half), **params)
    model = resumed.train(problem)

    assert model.get_tree_count() == 6
    np.testing.assert_array_equal(model.predict(X), uninterrupted.predict(X))


@pytest.mark.parametrize("representation", [Representation.LINKED, Representation.COMPACT])
@pytest.mark.parametrize("tree_builder", [TreeBuilder.MULTI_FULL, TreeBuilder.MULTI_FAST_HIST])
def test_multi_output_trees_resume(tree_builder, representation):
    X, Y = make_regression(n_samples=60, n_features=4, n_targets=3, random_state=6)
    problem = MultivariateRegressionProblem(X, Y)
    params = dict(loss_function=LossFunction.L2, iterations_count=5, subsample=1.0,
                  subfeature=1.0, max_tree_depth=3, tree_builder=tree_builder,
                  representation=representation, random_state=7)

    uninterrupted = GradientBoost(**params).train(problem)

    first_half = GradientBoost(**params)
    for _ in range(2):
        first_half.train_step(problem)
    resumed = restored(saved_bytes(first_half), **params)

    assert len(resumed.ensembles) == 1
    for original, loaded in zip(first_half.ensembles[0], resumed.ensembles[0]):
        assert loaded.value_size == 3
        for node, copy in zip(original.iter_nodes(), loaded.iter_nodes()):
            if node.is_leaf:
                np.testing.assert_array_equal(copy.value, node.value)

    model = resumed.train(problem)

    assert model.get_tree_count() == 5
    assert model.is_compact == (representation == Representation.COMPACT)
    assert model.predict(X).shape == (60, 3)
    np.testing.assert_array_equal(model.predict(X), uninterrupted.predict(X))


def test_empty_checkpoint():
    data = saved_bytes(GradientBoost())

    # ensemble count, then an empty cache
    assert data == struct.pack("<iii", 0, 0, 0)
    copy = restored(data)
    assert copy.ensembles == []
    assert copy.predict_cache is None
    assert copy.iteration == 0


def test_finalized_trainer_saves_trees_without_cache():
    X, y = make_regression(n_samples=30, n_features=2, random_state=5)
    problem = RegressionProblem(X, y)
    booster = GradientBoost(loss_function=LossFunction.L2, iterations_count=2, subsample=1.0)
    booster.train(problem)

    copy = restored(saved_bytes(booster), loss_function=LossFunction.L2, iterations_count=3,
                    subsample=1.0)

    assert copy.iteration == 2
    assert copy.predict_cache is None
    copy.train_step(problem)
    assert copy.iteration == 3


def test_checkpoint_files(tmp_path, multiclass_problem):
    booster = GradientBoost(iterations_count=5, subsample=1.0, max_tree_depth=2)
    booster.train_step(multiclass_problem)
    path = tmp_path / "booster.ckpt"

    booster.save_checkpoint(str(path))
    copy = GradientBoost()
    copy.load_checkpoint(str(path))

    assert path.read_bytes() == saved_bytes(copy)


def test_truncated_checkpoint_raises(multiclass_problem):
    booster = GradientBoost(iterations_count=5, subsample=1.0)
    booster.train_step(multiclass_problem)
    data = saved_bytes(booster)

    with pytest.raises(EOFError):
        restored(data[:-5])


def test_checkpoint_for_other_problem_shape_raises(multiclass_problem):
    booster = GradientBoost(iterations_count=5, subsample=1.0)
    booster.train_step(multiclass_problem)
    copy = restored(saved_bytes(booster))

    X, y = make_classification(n_samples=80, n_features=5, random_state=0)
    with pytest.raises(ValueError, match="Restored model has 3 ensembles"):
        copy.train_step(ClassificationProblem(X, y))
