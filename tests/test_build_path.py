import time

import numpy as np
import pytest

from varsel import ReferencePosterior, build_path
from conftest import make_reference


def test_path_is_permutation(null_ref):
    path = build_path(null_ref)
    assert sorted(path) == list(range(null_ref.n_predictors))
    assert len(set(path)) == len(path)


def test_strong_predictor_enters_first(strong_ref):
    path = build_path(strong_ref)
    assert path[0] == 0


def test_signal_predictors_lead_the_path(signal_ref):
    path = build_path(signal_ref, max_workers=1)
    assert set(path[:3]) == {0, 1, 2}


def test_thread_count_does_not_change_path(null_ref):
    assert build_path(null_ref, max_workers=1) == build_path(null_ref, max_workers=4)


class _NoSearch(ReferencePosterior):
    def search_criterion(self, submodel):
        raise AssertionError("candidate comparison should be skipped")


def test_single_predictor_short_circuits():
    rng = np.random.default_rng(1)
    X = rng.standard_normal((30, 1))
    y = X[:, 0] + rng.standard_normal(30)
    ref = make_reference(X, y, S=200, cls=_NoSearch)
    assert build_path(ref) == (0,)


class _Tied(ReferencePosterior):
    def search_criterion(self, submodel):
        return 1.0


def test_ties_go_to_lowest_index(signal_data):
    ref = make_reference(*signal_data, S=100, cls=_Tied)
    assert build_path(ref, max_workers=3) == tuple(range(ref.n_predictors))


class _Reversed(ReferencePosterior):
    def search_criterion(self, submodel):
        return float(submodel[-1])


def test_argmax_of_criterion(signal_data):
    ref = make_reference(*signal_data, S=100, cls=_Reversed)
    assert build_path(ref) == tuple(reversed(range(ref.n_predictors)))


class _SlowSearch(ReferencePosterior):
    def search_criterion(self, submodel):
        time.sleep(0.05)
        return super().search_criterion(submodel)


def test_search_respects_timeout(signal_data):
    ref = make_reference(*signal_data, S=100, cls=_SlowSearch)
    start = time.monotonic()
    with pytest.raises(TimeoutError):
        build_path(ref, max_workers=1, timeout=0.02)
    # a full search scores 20 candidates, about 1s
    assert time.monotonic() - start < 0.5
