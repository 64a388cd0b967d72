"""Tests for job dependency graph construction."""

from __future__ import annotations

import pytest

from matrixci.dag import build_dag, topo_levels, validate_graph
from matrixci.dsl import job, sh
from matrixci.errors import ConfigurationError


def _job(name, *needs):
    return job(name, sh("s", "true"), needs=list(needs))


def test_edges_point_from_prerequisite_to_dependent() -> None:
    adj, indeg = build_dag([_job("a"), _job("b", "a"), _job("c", "a", "b")])

    assert adj == {"a": {"b", "c"}, "b": {"c"}, "c": set()}
    assert indeg == {"a": 0, "b": 1, "c": 2}


def test_levels_keep_declaration_order() -> None:
    jobs = [_job("z"), _job("a"), _job("m", "z"), _job("b", "a")]

    assert validate_graph(jobs) == [["z", "a"], ["m", "b"]]


def test_duplicate_names() -> None:
    with pytest.raises(ConfigurationError) as exc:
        build_dag([_job("a"), _job("a")])
    assert exc.value.field_path == "jobs"


def test_missing_dependency() -> None:
    with pytest.raises(ConfigurationError) as exc:
        build_dag([_job("a", "ghost")])
    assert exc.value.field_path == "jobs.a.needs"


def test_self_dependency() -> None:
    with pytest.raises(ConfigurationError):
        build_dag([_job("a", "a")])


def test_cycle() -> None:
    jobs = [_job("a", "c"), _job("b", "a"), _job("c", "b"), _job("free")]
    adj, indeg = build_dag(jobs)

    with pytest.raises(ConfigurationError) as exc:
        topo_levels(jobs, adj, indeg)
    assert "cycle" in exc.value.message
