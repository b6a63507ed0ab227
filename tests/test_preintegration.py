#!/usr/bin/env python3
"""
Test script for IMU preintegration.

This script tests PreintegratedImuMeasurements with synthetic data to verify:
1. Covariance propagation (symmetry, PSD, monotone trace)
2. Zero-motion and constant-rate closed forms
3. Reset and equality laws
4. Bias Jacobians against re-integration with a perturbed bias
5. Update order: Jacobians and F use the delta from before the sample
6. Measurement correction with a sensor mounting pose
7. Configuration loading and prediction
"""

import logging
from pathlib import Path

import numpy as np
import pytest
import gtsam
from gtsam import Rot3, Pose3

from estimation.imu_factor import PreintegratedImuMeasurements
from utilities.imu_params import ImuParams
from utilities.so3 import skew, right_jacobian_SO3

CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "imu_params.yaml"

SIGMA_ACC = 0.01
SIGMA_GYRO = 0.002
SIGMA_INT = 1e-4


def make_pim(bias=None, use_2nd_order_integration=False, noise=True) -> PreintegratedImuMeasurements:
    scale = 1.0 if noise else 0.0
    return PreintegratedImuMeasurements(
        bias=bias,
        measured_acc_covariance=(scale * SIGMA_ACC)**2 * np.eye(3),
        measured_omega_covariance=(scale * SIGMA_GYRO)**2 * np.eye(3),
        integration_error_covariance=(scale * SIGMA_INT)**2 * np.eye(3),
        use_2nd_order_integration=use_2nd_order_integration,
    )


def random_measurements(rng: np.random.Generator, N: int = 50):
    """Accelerometer around gravity, moderate body rates, jittered dt."""
    accs = np.array([0.0, 0.0, 9.81]) + rng.normal(0.0, 1.0, size=(N, 3))
    omegas = rng.normal(0.0, 0.5, size=(N, 3))
    dts = rng.uniform(0.002, 0.02, size=N)
    return accs, omegas, dts


def integrate_with_bias(bias, accs, omegas, dts, use_2nd_order_integration=False):
    pim = make_pim(bias=bias, use_2nd_order_integration=use_2nd_order_integration)
    pim.integrate_measurements(accs, omegas, dts)
    return pim


def rodrigues(axis_angle: np.ndarray) -> np.ndarray:
    angle = np.linalg.norm(axis_angle)
    k = axis_angle / angle
    K = skew(k)
    return np.eye(3) + np.sin(angle) * K + (1 - np.cos(angle)) * K @ K


# ----------------------------------------------------------------------
# Covariance
# ----------------------------------------------------------------------

@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_covariance_symmetric_psd(seed):
    rng = np.random.default_rng(seed)
    accs, omegas, dts = random_measurements(rng)
    pim = make_pim(bias=gtsam.imuBias.ConstantBias(rng.normal(0, 0.05, 3), rng.normal(0, 0.01, 3)))

    for acc, omega, dt in zip(accs, omegas, dts):
        pim.integrate_measurement(acc, omega, dt)
        P = pim.preint_meas_cov

        np.testing.assert_allclose(P, P.T, atol=0.0)
        min_eig = np.min(np.linalg.eigvalsh(P))
        assert min_eig >= -1e-12 * max(1.0, np.trace(P))


def test_covariance_trace_never_decreases():
    rng = np.random.default_rng(12)
    pim = make_pim()

    prev_trace = 0.0
    for _ in range(200):
        acc = np.array([0.0, 0.0, 9.81]) + rng.normal(0.0, 0.2, 3)
        omega = rng.normal(0.0, 0.05, 3)
        pim.integrate_measurement(acc, omega, 0.01)

        trace = np.trace(pim.preint_meas_cov)
        assert trace > prev_trace
        prev_trace = trace


def test_covariance_matches_first_order_propagation():
    rng = np.random.default_rng(7)
    accs, omegas, dts = random_measurements(rng, N=10)
    pim = make_pim()
    pim.integrate_measurements(accs[:-1], omegas[:-1], dts[:-1])

    P_before = pim.preint_meas_cov.copy()
    F, G = pim.integrate_measurement(accs[-1], omegas[-1], dts[-1], return_jacobians=True)

    expected = F @ P_before @ F.T + pim.measurement_covariance * dts[-1]
    np.testing.assert_allclose(pim.preint_meas_cov, expected, atol=1e-15)

    # G is block diagonal with the position block I Δt
    np.testing.assert_allclose(G[0:3, 0:3], np.eye(3) * dts[-1])
    np.testing.assert_allclose(G[0:3, 3:9], 0.0)
    np.testing.assert_allclose(G[3:6, [0, 1, 2, 6, 7, 8]], 0.0)
    np.testing.assert_allclose(G[6:9, 0:6], 0.0)


def test_zero_motion_keeps_deltas_and_adds_noise():
    pim = make_pim()
    dt = 0.01

    pim.integrate_measurement(np.zeros(3), np.zeros(3), dt)
    np.testing.assert_allclose(pim.preint_meas_cov, pim.measurement_covariance * dt, atol=0.0)

    for _ in range(3):
        pim.integrate_measurement(np.zeros(3), np.zeros(3), dt)
        np.testing.assert_allclose(pim.delta_p_ij, np.zeros(3), atol=0.0)
        np.testing.assert_allclose(pim.delta_v_ij, np.zeros(3), atol=0.0)
        assert pim.delta_R_ij.equals(Rot3(), 0.0)
    assert pim.delta_t_ij == pytest.approx(4 * dt)


# ----------------------------------------------------------------------
# Closed forms
# ----------------------------------------------------------------------

def test_constant_rate_single_step_is_exact_rotation():
    omega = np.array([0.3, -0.2, 0.5])
    dt = 0.1
    pim = make_pim()
    pim.integrate_measurement(np.zeros(3), omega, dt)

    np.testing.assert_allclose(pim.delta_R_ij.matrix(), rodrigues(omega * dt), atol=1e-12)
    np.testing.assert_allclose(pim.theta_ij, omega * dt, atol=1e-12)


def test_constant_rate_many_steps_compose_about_fixed_axis():
    omega = np.array([0.0, 1.0, 1.0])
    dt = 0.01
    pim = make_pim()
    for _ in range(100):
        pim.integrate_measurement(np.zeros(3), omega, dt)

    np.testing.assert_allclose(pim.delta_R_ij.matrix(), rodrigues(omega * 1.0), atol=1e-10)


def test_end_to_end_gravity_cancelling_samples():
    pim = make_pim(noise=False)
    for _ in range(2):
        pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.zeros(3), 0.01)

    np.testing.assert_allclose(pim.delta_p_ij, [0.0, 0.0, 9.81 * 0.01**2], atol=1e-12)
    np.testing.assert_allclose(pim.delta_v_ij, [0.0, 0.0, 9.81 * 0.02], atol=1e-12)
    assert pim.delta_R_ij.equals(Rot3(), 1e-12)
    np.testing.assert_allclose(pim.preint_meas_cov, np.zeros((9, 9)), atol=0.0)
    assert pim.delta_t_ij == pytest.approx(0.02)


def test_second_order_integration_is_exact_for_constant_acceleration():
    pim = make_pim(use_2nd_order_integration=True)
    acc = np.array([0.5, -1.0, 9.81])
    for _ in range(20):
        pim.integrate_measurement(acc, np.zeros(3), 0.01)

    T = 0.2
    np.testing.assert_allclose(pim.delta_p_ij, 0.5 * acc * T**2, atol=1e-12)
    np.testing.assert_allclose(pim.delta_v_ij, acc * T, atol=1e-12)


# ----------------------------------------------------------------------
# Reset / equality
# ----------------------------------------------------------------------

def test_reset_returns_to_fresh_state():
    rng = np.random.default_rng(3)
    bias = gtsam.imuBias.ConstantBias(np.array([0.1, 0.0, -0.1]), np.array([0.01, 0.02, 0.0]))
    pim = make_pim(bias=bias)
    pim.integrate_measurements(*random_measurements(rng, N=20))

    pim.reset_integration()
    assert pim.equals(make_pim(bias=bias), 0.0)
    np.testing.assert_allclose(pim.preint_meas_cov, np.zeros((9, 9)), atol=0.0)
    assert pim.delta_R_ij.equals(Rot3(), 0.0)
    assert pim.delta_t_ij == 0.0

    pim.reset_integration()
    assert pim.equals(make_pim(bias=bias), 0.0)


def test_equality_of_identical_sequences():
    rng = np.random.default_rng(11)
    accs, omegas, dts = random_measurements(rng, N=30)
    bias = gtsam.imuBias.ConstantBias(np.array([0.02, -0.01, 0.03]), np.array([0.001, 0.0, -0.002]))

    pim1 = integrate_with_bias(bias, accs, omegas, dts)
    pim2 = integrate_with_bias(bias, accs, omegas, dts)
    assert pim1.equals(pim2, 1e-12)
    assert pim2.equals(pim1, 1e-12)

    accs_changed = accs.copy()
    accs_changed[10, 0] += 1e-3
    pim3 = integrate_with_bias(bias, accs_changed, omegas, dts)
    assert not pim1.equals(pim3, 1e-7)

    omegas_changed = omegas.copy()
    omegas_changed[5, 2] += 1e-3
    pim4 = integrate_with_bias(bias, accs, omegas_changed, dts)
    assert not pim1.equals(pim4, 1e-7)

    assert not pim1.equals("not a preintegration", 1e-6)


def test_copy_is_independent():
    rng = np.random.default_rng(5)
    accs, omegas, dts = random_measurements(rng, N=10)
    pim = make_pim()
    pim.integrate_measurements(accs, omegas, dts)

    pim_copy = pim.copy()
    assert pim_copy.equals(pim, 0.0)

    pim.integrate_measurement(accs[0], omegas[0], dts[0])
    assert not pim_copy.equals(pim, 1e-9)
    assert pim_copy.delta_t_ij == pytest.approx(np.sum(dts))


def test_batch_integration_matches_loop():
    rng = np.random.default_rng(9)
    accs, omegas, dts = random_measurements(rng, N=15)

    batch = make_pim()
    batch.integrate_measurements(accs, omegas, dts)

    loop = make_pim()
    for acc, omega, dt in zip(accs, omegas, dts):
        loop.integrate_measurement(acc, omega, dt)

    assert batch.equals(loop, 0.0)

    with pytest.raises(ValueError):
        batch.integrate_measurements(accs, omegas[:-1], dts[:-1])


# ----------------------------------------------------------------------
# Bias Jacobians
# ----------------------------------------------------------------------

@pytest.mark.parametrize("use_2nd_order_integration", [False, True])
def test_bias_jacobians_match_reintegration(use_2nd_order_integration):
    rng = np.random.default_rng(21)
    accs, omegas, dts = random_measurements(rng, N=40)
    acc_bias = np.array([0.05, -0.02, 0.1])
    gyro_bias = np.array([0.01, 0.003, -0.02])

    pim0 = integrate_with_bias(gtsam.imuBias.ConstantBias(acc_bias, gyro_bias),
                               accs, omegas, dts, use_2nd_order_integration)

    h = 1e-6
    dP_dBa = np.zeros((3, 3))
    dV_dBa = np.zeros((3, 3))
    dP_dBw = np.zeros((3, 3))
    dV_dBw = np.zeros((3, 3))
    dR_dBw = np.zeros((3, 3))
    for k in range(3):
        d = np.zeros(3)
        d[k] = h

        plus = integrate_with_bias(gtsam.imuBias.ConstantBias(acc_bias + d, gyro_bias),
                                   accs, omegas, dts, use_2nd_order_integration)
        minus = integrate_with_bias(gtsam.imuBias.ConstantBias(acc_bias - d, gyro_bias),
                                    accs, omegas, dts, use_2nd_order_integration)
        dP_dBa[:, k] = (plus.delta_p_ij - minus.delta_p_ij) / (2 * h)
        dV_dBa[:, k] = (plus.delta_v_ij - minus.delta_v_ij) / (2 * h)

        plus = integrate_with_bias(gtsam.imuBias.ConstantBias(acc_bias, gyro_bias + d),
                                   accs, omegas, dts, use_2nd_order_integration)
        minus = integrate_with_bias(gtsam.imuBias.ConstantBias(acc_bias, gyro_bias - d),
                                    accs, omegas, dts, use_2nd_order_integration)
        dP_dBw[:, k] = (plus.delta_p_ij - minus.delta_p_ij) / (2 * h)
        dV_dBw[:, k] = (plus.delta_v_ij - minus.delta_v_ij) / (2 * h)
        dR_dBw[:, k] = (np.asarray(Rot3.Logmap(pim0.delta_R_ij.between(plus.delta_R_ij)))
                        - np.asarray(Rot3.Logmap(pim0.delta_R_ij.between(minus.delta_R_ij)))) / (2 * h)

    np.testing.assert_allclose(pim0.delP_delBiasAcc, dP_dBa, atol=1e-6)
    np.testing.assert_allclose(pim0.delV_delBiasAcc, dV_dBa, atol=1e-6)
    np.testing.assert_allclose(pim0.delP_delBiasOmega, dP_dBw, atol=1e-6)
    np.testing.assert_allclose(pim0.delV_delBiasOmega, dV_dBw, atol=1e-6)
    np.testing.assert_allclose(pim0.delR_delBiasOmega, dR_dBw, atol=1e-6)


def test_bias_corrected_rotation_tracks_reintegration():
    rng = np.random.default_rng(4)
    accs, omegas, dts = random_measurements(rng, N=30)
    pim = integrate_with_bias(gtsam.imuBias.ConstantBias(), accs, omegas, dts)

    delta_bw = np.array([1e-4, -2e-4, 5e-5])
    reintegrated = integrate_with_bias(gtsam.imuBias.ConstantBias(np.zeros(3), delta_bw),
                                       accs, omegas, dts)
    corrected = pim.biascorrected_delta_R_ij(delta_bw)
    assert corrected.equals(reintegrated.delta_R_ij, 1e-7)


# ----------------------------------------------------------------------
# Update order
# ----------------------------------------------------------------------

def test_jacobians_and_transition_use_pre_update_delta():
    """Pins the update order: everything linearized about the old ΔR_ij."""
    pim = make_pim()
    for _ in range(10):
        pim.integrate_measurement(np.array([0.2, 0.1, 9.81]), np.array([0.4, -0.3, 0.8]), 0.05)

    R_before = pim.delta_R_ij.matrix()
    theta_before = pim.theta_ij
    delV_delBiasAcc_before = pim.delV_delBiasAcc.copy()

    acc = np.array([1.0, -0.5, 9.0])
    omega = np.array([-0.6, 0.9, 0.3])
    dt = 0.05
    F, G = pim.integrate_measurement(acc, omega, dt, return_jacobians=True)
    R_after = pim.delta_R_ij.matrix()
    assert not np.allclose(R_before, R_after, atol=1e-3)

    np.testing.assert_allclose(pim.delV_delBiasAcc - delV_delBiasAcc_before, -R_before * dt, atol=1e-14)
    np.testing.assert_allclose(F[3:6, 6:9], -R_before @ skew(acc) @ right_jacobian_SO3(theta_before) * dt,
                               atol=1e-14)
    np.testing.assert_allclose(G[3:6, 3:6], R_before * dt, atol=1e-14)
    np.testing.assert_allclose(F[0:3, 3:6], np.eye(3) * dt)
    np.testing.assert_allclose(F[3:6, 3:6], np.eye(3))


# ----------------------------------------------------------------------
# Measurement correction
# ----------------------------------------------------------------------

def test_correct_measurements_removes_bias():
    bias = gtsam.imuBias.ConstantBias(np.array([0.1, 0.2, 0.3]), np.array([0.01, 0.02, 0.03]))
    pim = make_pim(bias=bias)
    acc, omega = pim.correct_measurements(np.array([1.0, 1.0, 10.0]), np.array([0.5, 0.5, 0.5]))
    np.testing.assert_allclose(acc, [0.9, 0.8, 9.7])
    np.testing.assert_allclose(omega, [0.49, 0.48, 0.47])

    # identity mounting changes nothing
    acc_id, omega_id = pim.correct_measurements(np.array([1.0, 1.0, 10.0]), np.array([0.5, 0.5, 0.5]),
                                                Pose3())
    np.testing.assert_allclose(acc_id, acc)
    np.testing.assert_allclose(omega_id, omega)


def test_correct_measurements_with_sensor_pose():
    pim = make_pim()
    w, r = 2.0, 0.3
    body_R_sensor = Rot3.Rz(np.pi / 2)
    body_P_sensor = Pose3(body_R_sensor, np.array([r, 0.0, 0.0]))

    measured_acc = np.array([1.0, 0.0, 9.81])
    measured_omega = np.array([0.0, 0.0, w])
    acc, omega = pim.correct_measurements(measured_acc, measured_omega, body_P_sensor)

    np.testing.assert_allclose(omega, [0.0, 0.0, w], atol=1e-12)
    # rotated reading plus the centripetal term ω²r along the lever arm
    np.testing.assert_allclose(acc, body_R_sensor.matrix() @ measured_acc + np.array([w**2 * r, 0.0, 0.0]),
                               atol=1e-12)

    # the same correction happens inside integrate_measurement
    pim_mounted = make_pim()
    pim_mounted.integrate_measurement(measured_acc, measured_omega, 0.01, body_P_sensor)
    pim_body = make_pim()
    pim_body.integrate_measurement(acc, omega, 0.01)
    assert pim_mounted.equals(pim_body, 1e-12)


# ----------------------------------------------------------------------
# Contract violations
# ----------------------------------------------------------------------

@pytest.mark.parametrize("dt", [0.0, -0.01, float("nan")])
def test_non_positive_dt_is_rejected(dt):
    pim = make_pim()
    pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.zeros(3), 0.01)
    before = pim.copy()

    with pytest.raises(ValueError):
        pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.zeros(3), dt)
    assert pim.equals(before, 0.0)


def test_non_finite_transition_skips_covariance_update(monkeypatch, caplog):
    pim = make_pim()
    pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.array([0.1, 0.0, 0.0]), 0.01)
    cov_before = pim.preint_meas_cov.copy()

    monkeypatch.setattr("estimation.imu_factor.right_jacobian_inv_SO3",
                        lambda omega: np.full((3, 3), np.nan))
    with caplog.at_level(logging.WARNING, logger="estimation.imu_factor"):
        F, _ = pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.array([0.1, 0.0, 0.0]), 0.01,
                                         return_jacobians=True)

    assert not np.isfinite(F).all()
    np.testing.assert_array_equal(pim.preint_meas_cov, cov_before)
    assert pim.delta_t_ij == pytest.approx(0.02)
    assert any(r.name == "estimation.imu_factor" and r.levelno == logging.WARNING
               and "covariance update skipped" in r.getMessage() for r in caplog.records)


def test_invalid_measurements_are_rejected():
    pim = make_pim()
    with pytest.raises(ValueError):
        pim.integrate_measurement(np.array([np.nan, 0.0, 9.81]), np.zeros(3), 0.01)
    with pytest.raises(ValueError):
        pim.integrate_measurement(np.array([0.0, 9.81]), np.zeros(3), 0.01)
    with pytest.raises(ValueError):
        PreintegratedImuMeasurements(measured_acc_covariance=np.eye(2))
    assert pim.delta_t_ij == 0.0


# ----------------------------------------------------------------------
# Configuration and prediction
# ----------------------------------------------------------------------

def test_params_from_yaml(tmp_path):
    config_file = tmp_path / "imu.yaml"
    config_file.write_text(
        "imu:\n"
        "  accelerometer_sigma: 0.02\n"
        "  gyroscope_sigma: 0.003\n"
        "  integration_sigma: 0.0001\n"
        "  use_2nd_order_integration: true\n"
        "navigation:\n"
        "  gravity: [0.0, 0.0, -9.8]\n"
        "  omega_coriolis: [0.0, 1.0e-5, 7.0e-5]\n"
        "  use_2nd_order_coriolis: true\n"
        "body_P_sensor:\n"
        "  rotation_rpy: [0.0, 0.0, 1.5707963267948966]\n"
        "  translation: [0.1, 0.0, -0.05]\n"
    )
    params = ImuParams.from_yaml(str(config_file))

    np.testing.assert_allclose(params.accelerometer_covariance, 0.02**2 * np.eye(3))
    np.testing.assert_allclose(params.gravity, [0.0, 0.0, -9.8])
    assert params.use_2nd_order_integration
    assert params.use_2nd_order_coriolis
    assert params.body_P_sensor.equals(Pose3(Rot3.Rz(np.pi / 2), np.array([0.1, 0.0, -0.05])), 1e-12)

    pim = PreintegratedImuMeasurements.from_params(params)
    np.testing.assert_allclose(pim.measurement_covariance, params.measurement_covariance)
    np.testing.assert_allclose(pim.measurement_covariance[6:9, 6:9], 0.003**2 * np.eye(3))
    np.testing.assert_allclose(pim.measurement_covariance[0:3, 0:3], 1e-4**2 * np.eye(3))
    assert pim.use_2nd_order_integration


def test_default_config_loads():
    params = ImuParams.from_yaml(str(CONFIG_PATH))
    np.testing.assert_allclose(params.gravity, [0.0, 0.0, -9.81])
    assert params.body_P_sensor.equals(Pose3(), 1e-12)
    assert not params.use_2nd_order_integration


def test_predict_stationary_body():
    """Specific force cancelling gravity keeps a level body at rest."""
    pim = make_pim(use_2nd_order_integration=True)
    for _ in range(100):
        pim.integrate_measurement(np.array([0.0, 0.0, 9.81]), np.zeros(3), 0.01)

    pose_i = Pose3(Rot3(), np.array([1.0, 2.0, 3.0]))
    state = pim.predict(pose_i, np.zeros(3), gtsam.imuBias.ConstantBias(),
                        gravity=np.array([0.0, 0.0, -9.81]), omega_coriolis=np.zeros(3))

    assert state.pose.equals(pose_i, 1e-9)
    np.testing.assert_allclose(state.velocity, np.zeros(3), atol=1e-12)
