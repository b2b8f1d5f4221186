import os
import time
from pathlib import Path

import numpy as np
import pytest

from admmpd.engine import Options, make_tet_grid


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        help="Run long simulation tests",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip = pytest.mark.skip(reason="need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip)


_RUN_LOG = "pytest_run_times.log"


def pytest_sessionstart(session):
    session._start_time = time.time()


def pytest_sessionfinish(session, exitstatus):
    start = getattr(session, "_start_time", None)
    if start is None:
        return
    log_file = Path(session.config.rootpath) / _RUN_LOG
    history = int(os.environ.get("PYTEST_RUN_TIME_HISTORY", "50"))
    lines = log_file.read_text().splitlines() if log_file.exists() else []
    lines.append(f"{time.strftime('%Y-%m-%d %H:%M:%S')} {time.time() - start:.2f}")
    lines = lines[-history:]
    log_file.write_text("\n".join(lines) + "\n")

    reporter = session.config.pluginmanager.get_plugin("terminalreporter")
    if reporter:
        reporter.write_line("Recent pytest run times:")
        for entry in lines[-5:]:
            reporter.write_line(f"  {entry}")


# ---------------------------------------------------------------------------
# Lattice fixtures

@pytest.fixture
def unit_tet():
    x = np.array(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
    )
    tets = np.array([[0, 1, 2, 3]])
    return x, tets


@pytest.fixture
def grid_mesh():
    return make_tet_grid((2, 2, 2), (1.0, 1.0, 1.0))


@pytest.fixture
def small_grid():
    return make_tet_grid((1, 1, 2), (1.0, 1.0, 2.0))


@pytest.fixture
def no_gravity():
    return Options(grav=(0.0, 0.0, 0.0))
