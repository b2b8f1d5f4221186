import logging
import gc

import numpy as np
import pytest

from admmpd.engine import (
    AdmmPdSolver,
    ConfigurationError,
    EmbeddedMeshData,
    GaussSeidelSolver,
    Options,
    Pin,
    TetMeshData,
    elastic_energy,
    grid_vertex_ids,
    make_tet_grid,
    pin_vertices,
)
from admmpd.engine.coloring import is_valid_coloring

DT = 1.0 / 24.0
G = -9.8


def test_rest_state_is_equilibrium(grid_mesh, no_gravity):
    with AdmmPdSolver(no_gravity) as solver:
        data = solver.init(grid_mesh)
        for _ in range(3):
            stats = solver.step(data)
    assert stats.admm_iters == no_gravity.max_admm_iters
    assert np.allclose(data.x, grid_mesh.x_rest, atol=1e-9)
    assert np.allclose(data.v, 0.0, atol=1e-8)


@pytest.mark.parametrize("linsolver", ["direct", "cg", "gs"])
def test_rest_state_is_equilibrium_for_every_solver(grid_mesh, linsolver):
    opts = Options(grav=(0.0, 0.0, 0.0), linsolver=linsolver, max_admm_iters=5)
    with AdmmPdSolver(opts) as solver:
        data = solver.init(grid_mesh)
        solver.step(data)
    assert np.allclose(data.x, grid_mesh.x_rest, atol=1e-8)


def test_single_mass_free_fall():
    mesh = TetMeshData(x_rest=[[0.0, 0.0, 1.0]], faces=[], tets=np.zeros((0, 4), dtype=int))
    solver = AdmmPdSolver(Options(max_admm_iters=3))
    data = solver.init(mesh)
    data.v[:] = [0.5, 0.0, 2.0]
    solver.step(data)
    assert data.m.tolist() == [1.0]
    assert data.v[0] == pytest.approx([0.5, 0.0, 2.0 + G * DT])
    assert data.x[0] == pytest.approx([0.5 * DT, 0.0, 1.0 + 2.0 * DT + G * DT * DT])


def test_connected_body_free_fall_is_rigid(unit_tet):
    x, tets = unit_tet
    mesh = TetMeshData(x_rest=x, faces=[], tets=tets)
    solver = AdmmPdSolver(Options(linsolver="direct"))
    data = solver.init(mesh)
    solver.step(data)
    assert np.allclose(data.v[:, 2], G * DT, atol=1e-9)
    assert np.allclose(data.v[:, :2], 0.0, atol=1e-9)
    assert np.allclose(data.x - x, [0.0, 0.0, G * DT * DT], atol=1e-9)


def test_pinned_top_holds(grid_mesh):
    top = grid_vertex_ids(grid_mesh, axis=2, side="max")
    pins = pin_vertices(grid_mesh.x_rest, top)
    with AdmmPdSolver(Options(linsolver="direct")) as solver:
        data = solver.init(grid_mesh, pins)
        assert solver.linear_system.constrained
        for _ in range(5):
            solver.step(data)
    assert np.max(np.abs(data.x[top] - grid_mesh.x_rest[top])) < 1e-3
    assert np.max(np.abs(solver.constraints.residual(data.x))) < 1e-3


def test_unpinned_body_falls_further_than_pinned(grid_mesh):
    top = grid_vertex_ids(grid_mesh, axis=2, side="max")
    opts = Options(linsolver="direct")
    with AdmmPdSolver(opts) as free_solver, AdmmPdSolver(opts) as pinned_solver:
        free = free_solver.init(grid_mesh)
        pinned = pinned_solver.init(grid_mesh, pin_vertices(grid_mesh.x_rest, top))
        free_solver.step(free)
        pinned_solver.step(pinned)
    free_drop = grid_mesh.x_rest[top, 2] - free.x[top, 2]
    pinned_drop = np.abs(grid_mesh.x_rest[top, 2] - pinned.x[top, 2])
    assert np.all(free_drop > 0.01)
    assert np.all(pinned_drop < 0.1 * free_drop)


def test_set_pins_switches_to_constrained_system(grid_mesh):
    with AdmmPdSolver(Options()) as solver:
        data = solver.init(grid_mesh)
        before = solver.linear_system
        assert not before.constrained
        solver.set_pins(data, [Pin.vertex(0, grid_mesh.x_rest[0])])
        after = solver.linear_system
        assert after.constrained
        assert after.key != before.key
        solver.step(data)
        solver.set_pins(data, [])
        assert not solver.linear_system.constrained


def test_embedded_pin_holds_embedded_point(grid_mesh):
    tet = 0
    corners = grid_mesh.x_rest[grid_mesh.tets[tet]]
    point = corners.mean(axis=0)
    mesh = EmbeddedMeshData(
        x_rest=[point], faces=np.zeros((0, 3)), lat_x_rest=grid_mesh.x_rest,
        tets=grid_mesh.tets, vtx_to_tet=[tet], barys=[[0.25] * 4],
    )
    pin = Pin.embedded(mesh, 0, point)
    assert pin.verts == tuple(int(v) for v in grid_mesh.tets[tet])
    with AdmmPdSolver(Options(linsolver="direct")) as solver:
        data = solver.init(mesh, [pin])
        for _ in range(3):
            solver.step(data)
    held = mesh.interpolate(data.x)[0]
    assert np.linalg.norm(held - point) < 1e-2
    # the rest of the body swings down around the pinned point
    assert np.min(data.x[:, 2] - grid_mesh.x_rest[:, 2]) < 0.0


def test_rebuild_keeps_state_when_vertex_count_matches(grid_mesh):
    with AdmmPdSolver(Options(linsolver="direct")) as solver:
        data = solver.init(grid_mesh)
        solver.step(data)
        x, v = data.x.copy(), data.v.copy()
        before = data.topology_version
        solver.rebuild(data, grid_mesh)
        assert data.topology_version > before
        assert np.array_equal(data.x, x)
        assert np.array_equal(data.v, v)
        assert solver.linear_system.pattern_key[0] == data.topology_version


def test_rebuild_resets_on_new_vertex_count(grid_mesh, small_grid):
    pins = [Pin.vertex(20, grid_mesh.x_rest[20]), Pin.vertex(1, grid_mesh.x_rest[1])]
    with AdmmPdSolver(Options(linsolver="direct")) as solver:
        data = solver.init(grid_mesh, pins)
        solver.step(data)
        solver.rebuild(data, small_grid)
        assert data.n_verts == len(small_grid.x_rest)
        assert np.array_equal(data.x, small_grid.x_rest)
        assert np.allclose(data.v, 0.0)
        # pins referencing removed vertices are dropped
        assert [p.verts for p in solver.pins] == [(1,)]
        assert data.z.shape == (3 * len(small_grid.tets), 3)
        solver.step(data)


def test_set_options_swaps_solver_and_material(grid_mesh):
    solver = AdmmPdSolver(Options())
    data = solver.init(grid_mesh)
    old = solver.linsolver
    assert old.direct._factors
    w_before = solver.energies.weights.copy()
    solver.set_options(data, Options(linsolver="gs", youngs=4e6))
    assert isinstance(solver.linsolver, GaussSeidelSolver)
    # the replaced strategy drops its factors
    assert old.direct._factors == []
    assert np.allclose(solver.energies.weights, 2.0 * w_before)
    solver.step(data)
    solver.close()


def test_threaded_local_step_matches_serial(grid_mesh):
    serial = AdmmPdSolver(Options(linsolver="direct", max_admm_iters=5))
    threaded = AdmmPdSolver(Options(linsolver="direct", max_admm_iters=5, num_threads=3))
    a = serial.init(grid_mesh)
    b = threaded.init(grid_mesh)
    a.v[:, 0] = b.v[:, 0] = np.linspace(-1.0, 1.0, len(a.v))
    serial.step(a)
    threaded.step(b)
    threaded.close()
    assert threaded._executor is None
    assert np.allclose(a.x, b.x)
    assert np.allclose(a.v, b.v)


def test_compressed_body_relaxes(grid_mesh, no_gravity):
    opts = no_gravity.replace(linsolver="direct")
    with AdmmPdSolver(opts) as solver:
        data = solver.init(grid_mesh)
        data.x = grid_mesh.x_rest * np.array([1.0, 1.0, 0.8])
        e0 = elastic_energy(np.asarray(solver.system.D @ data.x), solver.energies)
        for _ in range(10):
            solver.step(data)
        e1 = elastic_energy(data.Dx, solver.energies)
    assert e0 > 0.0
    assert e1 < e0


def test_stagnation_is_logged_not_raised(grid_mesh, caplog):
    opts = Options(linsolver="cg", max_cg_iters=1, min_res=1e-14, max_admm_iters=3)
    top = grid_vertex_ids(grid_mesh, axis=2, side="max")
    with AdmmPdSolver(opts) as solver:
        data = solver.init(grid_mesh, pin_vertices(grid_mesh.x_rest, top))
        with caplog.at_level(logging.WARNING, logger="admmpd.engine.solver"):
            stats = solver.step(data)
    assert stats.stagnated == 3
    assert "iteration cap" in caplog.text
    assert np.all(np.isfinite(data.x))


def test_early_exit_on_admm_tol(grid_mesh, no_gravity):
    with AdmmPdSolver(no_gravity.replace(admm_tol=1e-6)) as solver:
        data = solver.init(grid_mesh)
        stats = solver.step(data)
    assert stats.admm_iters == 1


def test_step_requires_matching_init(grid_mesh, small_grid):
    solver = AdmmPdSolver()
    data = AdmmPdSolver().init(small_grid)
    with pytest.raises(ConfigurationError):
        solver.step(data)
    solver.init(grid_mesh)
    with pytest.raises(ConfigurationError):
        solver.step(data)


def test_init_rejects_empty_mesh():
    with pytest.raises(ConfigurationError):
        AdmmPdSolver().init(TetMeshData(x_rest=np.zeros((0, 3)), faces=[], tets=[]))


@pytest.mark.slow
def test_hanging_box_settles():
    mesh = make_tet_grid((3, 3, 3))
    top = grid_vertex_ids(mesh, axis=2, side="max")
    with AdmmPdSolver(Options(linsolver="direct")) as solver:
        data = solver.init(mesh, pin_vertices(mesh.x_rest, top))
        for _ in range(48):
            solver.step(data)
    assert np.max(np.abs(data.v)) < 0.5
    assert data.x[:, 2].min() < mesh.x_rest[:, 2].min()


@pytest.mark.parametrize("first_res, res", [((1, 1, 1), (2, 2, 2)), ((2, 2, 2), (1, 1, 1))])
def test_reinit_with_new_mesh_recolors_gauss_seidel(no_gravity, first_res, res):
    previous, mesh = make_tet_grid(first_res), make_tet_grid(res)
    opts = no_gravity.replace(linsolver="gs", max_admm_iters=3)
    solver = AdmmPdSolver(opts)
    first = solver.init(previous)
    data = solver.init(mesh)
    assert data.topology_version != first.topology_version
    groups = solver.linsolver.colors(solver.linear_system)
    assert sorted(np.concatenate(groups).tolist()) == list(range(len(mesh.x_rest)))
    assert is_valid_coloring(groups, solver.linear_system.operators[0])

    fresh = AdmmPdSolver(opts)
    ref = fresh.init(mesh)
    ref.v[:, 2] = data.v[:, 2] = np.linspace(-0.5, 0.5, len(data.v))
    solver.step(data)
    fresh.step(ref)
    assert np.allclose(data.x, ref.x)


def test_duals_accumulate_across_admm_iterations(grid_mesh, no_gravity):
    opts = no_gravity.replace(linsolver="direct", max_admm_iters=30)
    with AdmmPdSolver(opts) as solver:
        data = solver.init(grid_mesh)
        data.x = grid_mesh.x_rest * np.array([1.0, 1.0, 0.7])
        solver.init_solve(data)
        changes = []
        for _ in range(opts.max_admm_iters):
            solver.solve_local_step(data)
            solver.solve_global_step(data)
            u_prev = data.u.copy()
            solver.update_duals(data)
            changes.append(np.max(np.abs(data.u - u_prev)))
    assert np.max(np.abs(data.u)) > 0.0
    assert changes[-1] < 0.5 * changes[0]


def test_step_reports_primal_residual(grid_mesh, no_gravity):
    with AdmmPdSolver(no_gravity.replace(linsolver="direct")) as solver:
        data = solver.init(grid_mesh)
        data.x = grid_mesh.x_rest * np.array([1.0, 1.0, 0.8])
        stats = solver.step(data)
    assert stats.primal_residual == pytest.approx(np.max(np.abs(data.Dx - data.z)), abs=1e-12)


def test_dropped_solver_shuts_down_its_pool(grid_mesh):
    solver = AdmmPdSolver(Options(linsolver="direct", num_threads=2, max_admm_iters=2))
    data = solver.init(grid_mesh)
    solver.step(data)
    executor = solver._executor
    finalizer = solver._executor_finalizer
    assert finalizer.alive
    del solver
    gc.collect()
    assert not finalizer.alive
    assert executor._shutdown


def test_close_detaches_pool_finalizer(grid_mesh):
    solver = AdmmPdSolver(Options(linsolver="direct", num_threads=2, max_admm_iters=2))
    data = solver.init(grid_mesh)
    solver.step(data)
    finalizer = solver._executor_finalizer
    solver.close()
    assert not finalizer.alive
    assert solver._executor is None
