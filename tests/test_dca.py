import math

import numpy as np
import pytest

from refit_reco.dca import compute_dca, pos_cov_xyz_to_rz, rotation_to_rz
from refit_reco.engine import DetPlane, MeasuredState
from refit_reco.engines.straight_line import StraightLineTrajectory


def _random_cov(seed=0):
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(3, 3))
    return A @ A.T


@pytest.mark.parametrize("n", [(1.0, 0.0, 0.0), (0.3, -2.0, 5.0), (-1.0, -1.0, 0.1)])
def test_rotation_preserves_trace_and_symmetry(n):
    cov = _random_cov()
    pos, out = pos_cov_xyz_to_rz(n, (0.1, -0.2, 0.3), cov)
    assert np.trace(out) == pytest.approx(np.trace(cov), rel=1e-12)
    np.testing.assert_allclose(out, out.T)
    assert np.linalg.norm(pos) == pytest.approx(np.linalg.norm([0.1, -0.2, 0.3]))
    # longitudinal axis untouched
    assert pos[2] == pytest.approx(0.3)
    assert out[2, 2] == pytest.approx(cov[2, 2])


def test_rotation_axis():
    # r = n x z is along -y for n = x; it is rotated onto +x
    R = rotation_to_rz((1.0, 0.0, 0.0))
    np.testing.assert_allclose(R @ np.array([0.0, -1.0, 0.0]), [1.0, 0.0, 0.0], atol=1e-12)


def test_rotation_degenerate_along_beam():
    assert rotation_to_rz((0.0, 0.0, 1.0)) is None
    assert rotation_to_rz((4e-6, 0.0, 1.0)) is None
    assert pos_cov_xyz_to_rz((0.0, 0.0, 1.0), np.zeros(3), np.eye(3)) is None


def test_rotation_malformed_inputs():
    assert pos_cov_xyz_to_rz((1.0, 0.0, 0.0), np.zeros(2), np.eye(3)) is None
    assert pos_cov_xyz_to_rz((1.0, 0.0, 0.0), np.zeros(3), np.eye(2)) is None


def test_dca_of_fitted_track(fitted):
    _, traj = fitted
    res = compute_dca(traj, np.zeros(3))
    assert res is not None
    for name in ("dca2d", "dca2d_error", "dca", "dca_error",
                 "dca3d_xy", "dca3d_z", "dca3d_xy_error", "dca3d_z_error"):
        assert math.isfinite(getattr(res, name)), name
    assert abs(res.dca2d) < 1e-6
    assert res.dca < 1e-6
    assert res.dca2d_error > 0.0
    np.testing.assert_allclose(res.vertex_state.pos, np.zeros(3), atol=1e-6)


def test_vertex_covariance_adds_to_errors(fitted):
    _, traj = fitted
    plain = compute_dca(traj, np.zeros(3))
    smeared = compute_dca(traj, np.zeros(3), np.eye(3) * 0.01)
    assert smeared.dca2d_error > plain.dca2d_error
    assert smeared.dca_error > plain.dca_error


def _single_point_trajectory(pos, mom):
    plane = DetPlane.from_normal(pos, mom)
    state = MeasuredState(plane, np.concatenate([pos, mom]), np.eye(6) * 1e-4)
    return StraightLineTrajectory([1], [state], [state], [state], chi2=0.0, ndf=1.0, charge=1.0)


def test_degenerate_frame_keeps_beamline_dca():
    # momentum almost along the beam: the beam line is still reachable,
    # the transverse DCA frame is not defined
    traj = _single_point_trajectory(np.array([0.1, 0.0, 10.0]), np.array([0.0, 4e-6, 1.0]))
    res = compute_dca(traj, np.zeros(3))
    assert res is not None
    assert abs(res.dca2d) == pytest.approx(0.1, rel=1e-6)
    assert math.isfinite(res.dca)
    assert math.isnan(res.dca3d_xy) and math.isnan(res.dca3d_z)
    assert math.isnan(res.dca3d_xy_error) and math.isnan(res.dca3d_z_error)


def test_unreachable_beam_line_drops_track():
    traj = _single_point_trajectory(np.array([0.1, 0.0, 10.0]), np.array([0.0, 0.0, 1.0]))
    assert compute_dca(traj, np.zeros(3)) is None
