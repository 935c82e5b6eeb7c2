import numpy as np
import pytest

from refit_reco.kernels import (
    average_states,
    chi2,
    equilibrated_pinv,
    kalman_gain,
    pack_upper,
    robust_cholesky,
    symmetrize,
    unpack_upper,
)


def _spd(n, seed=0):
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    return A @ A.T + n * np.eye(n)


def test_robust_cholesky_spd_and_singular():
    S = _spd(4)
    L = robust_cholesky(S)
    np.testing.assert_allclose(L @ L.T, S, rtol=1e-12)

    singular = np.array([[1.0, 1.0], [1.0, 1.0]])
    L = robust_cholesky(singular)
    assert np.all(np.isfinite(L))
    np.testing.assert_allclose(L @ L.T, singular, atol=1e-6)


def test_kalman_gain_matches_inverse():
    P = _spd(6, seed=1)
    H = np.zeros((2, 6))
    H[0, 0] = H[1, 2] = 1.0
    S = H @ P @ H.T + np.diag([0.1, 0.2])
    np.testing.assert_allclose(kalman_gain(P, H, S), P @ H.T @ np.linalg.inv(S), rtol=1e-10)


def test_chi2():
    S = np.diag([4.0, 9.0])
    assert chi2(np.array([2.0, 3.0]), S) == pytest.approx(2.0)
    assert chi2(np.array([]), np.zeros((0, 0))) == 0.0


def test_average_states_information_form():
    C1, C2 = _spd(3, seed=2), _spd(3, seed=3)
    x1, x2 = np.array([1.0, 2.0, 3.0]), np.array([0.0, -1.0, 4.0])
    x, C = average_states(x1, C1, x2, C2)
    W1, W2 = np.linalg.inv(C1), np.linalg.inv(C2)
    C_ref = np.linalg.inv(W1 + W2)
    np.testing.assert_allclose(C, C_ref, rtol=1e-9)
    np.testing.assert_allclose(x, C_ref @ (W1 @ x1 + W2 @ x2), rtol=1e-9)
    np.testing.assert_allclose(C, C.T)


def test_average_states_shared_null_direction():
    # both estimates exactly known to be on the plane n . x = 0
    n = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
    Pn = np.eye(3) - np.outer(n, n)
    C1 = Pn @ np.diag([1e-7, 1e-7, 1e8]) @ Pn
    C2 = Pn @ np.diag([4e-7, 4e-7, 1e8]) @ Pn
    x1 = np.array([0.001, -0.001, 0.0])
    x2 = np.array([-0.001, 0.001, 0.0])
    x, C = average_states(x1, C1, x2, C2)
    assert np.all(np.isfinite(x)) and np.all(np.isfinite(C))
    assert abs(n @ x) < 1e-12
    # the more precise estimate dominates
    assert np.linalg.norm(x - x1) < np.linalg.norm(x - x2)


def test_equilibrated_pinv_of_regular_matrix():
    S = np.diag([1e-8, 1.0, 1e8])
    np.testing.assert_allclose(equilibrated_pinv(S), np.diag([1e8, 1.0, 1e-8]), rtol=1e-10)


def test_pack_unpack():
    C = symmetrize(_spd(6, seed=4))
    packed = pack_upper(C)
    assert packed.shape == (21,)
    np.testing.assert_allclose(unpack_upper(packed), C)
    with pytest.raises(ValueError):
        pack_upper(np.eye(5))
    with pytest.raises(ValueError):
        unpack_upper(np.zeros(20))
