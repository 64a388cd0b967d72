# matrixci_workflow.py
# The project's own pipeline: lint, then tests on every supported Python.
from __future__ import annotations

from matrixci import checkout, job, matrix, pipeline, sh, trigger, uses


def workflow():
    return pipeline(
        job(
            "lint",
            checkout(),
            uses("Ruff check", "lint", tool="ruff", args="check", files=["src/", "tests/"]),
            paths=["src/**", "tests/**", "pyproject.toml", "*.py"],
        ),
        job(
            "test",
            checkout(),
            uses("Python", "actions/setup-python", python="${{ matrix.python }}"),
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q", timeout=900),
            needs=["lint"],
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            fail_fast=True,
            paths=["src/**", "tests/**", "pyproject.toml"],
        ),
        job(
            "validate-examples",
            checkout(),
            sh("Validate Nix pipeline", "matrixci validate --workflow workflows/nix_ci.yml"),
            needs=["lint"],
        ),
        name="matrixci",
        on=[trigger("push", branches=["main"]), "pull_request"],
    )
