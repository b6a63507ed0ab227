from __future__ import annotations

from typing import Callable, List, Optional, Tuple

import numpy as np
import gtsam
from gtsam import Rot3, Pose3

from estimation.preintegration_base import PreintegrationBase
from utilities.imu_params import ImuParams
from utilities.so3 import skew, right_jacobian_SO3, right_jacobian_inv_SO3
from utilities.utils import as_matrix, as_vector3, equal_with_abs_tol, require_finite
from logging_config import get_logger

logger = get_logger(__name__)


# ----------------------------------------------------------------------
# Preintegrated measurements
# ----------------------------------------------------------------------

class PreintegratedImuMeasurements(PreintegrationBase):
    """
    Preintegrated IMU measurements with first-order covariance propagation.

    Error state of the preintegrated measurement: δx = [δp; δv; δθ] ∈ R^9.

    Per sample, in this order:

        1) bias Jacobians are updated with the old ΔR_ij
        2) θ_i, ΔR_i and Jr(θ_i) are captured
        3) Δp, Δv, ΔR advance
        4) θ_j and Jr⁻¹(θ_j) are captured
        5) Σ⁺ = F Σ Fᵀ + Q_c Δt
           (skipped, with a warning, when F is not finite)

    where Q_c is the continuous-time measurement covariance
    blkdiag(Σ_int, Σ_acc, Σ_gyro). Scaling Q_c by Δt is the usual
    small-Δt approximation of G Q_d Gᵀ.
    """

    def __init__(self,
                 bias: Optional[gtsam.imuBias.ConstantBias] = None,
                 measured_acc_covariance: Optional[np.ndarray] = None,
                 measured_omega_covariance: Optional[np.ndarray] = None,
                 integration_error_covariance: Optional[np.ndarray] = None,
                 use_2nd_order_integration: bool = False) -> None:
        def cov3(M, name):
            return np.zeros((3, 3)) if M is None else as_matrix(M, (3, 3), name)

        # block order matches the error state [δp; δv; δθ]
        self.measurement_covariance = np.zeros((9, 9))
        self.measurement_covariance[0:3, 0:3] = cov3(integration_error_covariance,
                                                     "integration_error_covariance")
        self.measurement_covariance[3:6, 3:6] = cov3(measured_acc_covariance, "measured_acc_covariance")
        self.measurement_covariance[6:9, 6:9] = cov3(measured_omega_covariance, "measured_omega_covariance")

        super().__init__(bias, use_2nd_order_integration)

    @classmethod
    def from_params(cls, params: ImuParams,
                    bias: Optional[gtsam.imuBias.ConstantBias] = None) -> 'PreintegratedImuMeasurements':
        return cls(
            bias=bias,
            measured_acc_covariance=params.accelerometer_covariance,
            measured_omega_covariance=params.gyroscope_covariance,
            integration_error_covariance=params.integration_covariance,
            use_2nd_order_integration=params.use_2nd_order_integration,
        )

    def reset_integration(self) -> None:
        super().reset_integration()
        self.preint_meas_cov = np.zeros((9, 9))
        logger.debug("Preintegration reset")

    def integrate_measurement(self,
                              measured_acc: np.ndarray,
                              measured_omega: np.ndarray,
                              dt: float,
                              body_P_sensor: Optional[Pose3] = None,
                              return_jacobians: bool = False
                              ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Integrate one accelerometer/gyroscope sample over dt.

        Args:
            measured_acc:   raw specific force in the sensor frame (3,)
            measured_omega: raw angular rate in the sensor frame (3,)
            dt:             sample interval [s], must be > 0
            body_P_sensor:  optional sensor pose in the body frame
            return_jacobians: also return (F, G) for verification

        Returns:
            None, or (F, G) with F the 9x9 error-state transition and G the
            9x9 noise mapping blkdiag(I Δt, ΔR_i Δt, Jr⁻¹(θ_j) Jr(θ_incr) Δt).
        """
        dt = float(dt)
        if not dt > 0.0:
            raise ValueError(f"dt must be positive, got {dt}")
        measured_acc = as_vector3(measured_acc, "measured_acc")
        measured_omega = as_vector3(measured_omega, "measured_omega")
        require_finite("IMU measurement", measured_acc, measured_omega)

        corrected_acc, corrected_omega = self.correct_measurements(
            measured_acc, measured_omega, body_P_sensor)

        theta_incr = corrected_omega * dt
        R_incr = Rot3.Expmap(theta_incr)
        Jr_theta_incr = right_jacobian_SO3(theta_incr)

        # Jacobians use the deltas from before this sample
        self.update_preintegrated_jacobians(corrected_acc, Jr_theta_incr, R_incr, dt)

        theta_i = self.theta_ij
        R_i = self.delta_R_ij.matrix()
        Jr_theta_i = right_jacobian_SO3(theta_i)

        self.update_preintegrated_measurements(corrected_acc, R_incr, dt)

        theta_j = self.theta_ij
        Jrinv_theta_j = right_jacobian_inv_SO3(theta_j)

        I3 = np.eye(3)
        Z3 = np.zeros((3, 3))
        F = np.block([
            [I3, I3 * dt, Z3],
            [Z3, I3, -R_i @ skew(corrected_acc) @ Jr_theta_i * dt],
            [Z3, Z3, Jrinv_theta_j @ R_incr.matrix().T @ Jr_theta_i],
        ])

        if np.isfinite(F).all():
            P = F @ self.preint_meas_cov @ F.T + self.measurement_covariance * dt
            # enforce symmetry
            self.preint_meas_cov = 0.5 * (P + P.T)
        else:
            # covariance keeps its previous value
            logger.warning(f"Non-finite transition matrix at theta_j={theta_j}, dt={dt}; "
                           f"covariance update skipped")

        if not return_jacobians:
            return None

        G = np.block([
            [I3 * dt, Z3, Z3],
            [Z3, R_i * dt, Z3],
            [Z3, Z3, Jrinv_theta_j @ Jr_theta_incr * dt],
        ])
        return F, G

    def integrate_measurements(self,
                               measured_accs: np.ndarray,
                               measured_omegas: np.ndarray,
                               dts,
                               body_P_sensor: Optional[Pose3] = None) -> None:
        """Integrate a batch of samples, rows in time order. dts may be a scalar."""
        measured_accs = np.asarray(measured_accs, float).reshape(-1, 3)
        measured_omegas = np.asarray(measured_omegas, float).reshape(-1, 3)
        if measured_accs.shape != measured_omegas.shape:
            raise ValueError(f"Mismatched batch shapes {measured_accs.shape} "
                             f"and {measured_omegas.shape}")
        dts = np.broadcast_to(np.asarray(dts, float), (measured_accs.shape[0],))

        for acc, omega, dt in zip(measured_accs, measured_omegas, dts):
            self.integrate_measurement(acc, omega, dt, body_P_sensor)

    def equals(self, other: 'PreintegratedImuMeasurements', tol: float = 1e-9) -> bool:
        if not isinstance(other, PreintegratedImuMeasurements):
            return False
        return (equal_with_abs_tol(self.measurement_covariance, other.measurement_covariance, tol)
                and equal_with_abs_tol(self.preint_meas_cov, other.preint_meas_cov, tol)
                and super().equals(other, tol))

    def __str__(self) -> str:
        return (f"{super().__str__()}\n"
                f"  measurementCovariance = \n {self.measurement_covariance}\n"
                f"  preintMeasCov = \n {self.preint_meas_cov}")


# ----------------------------------------------------------------------
# Factor
# ----------------------------------------------------------------------

def covariance_noise_model(cov: np.ndarray) -> gtsam.noiseModel.Gaussian:
    """Full (dense) Gaussian noise model from a covariance matrix."""
    cov = as_matrix(cov, (9, 9), "preintegrated covariance")
    cov = 0.5 * (cov + cov.T)
    try:
        np.linalg.cholesky(cov)
    except np.linalg.LinAlgError as exc:
        raise ValueError("Preintegrated covariance is not positive definite; "
                         "integrate at least one sample with non-zero noise") from exc
    return gtsam.noiseModel.Gaussian.Covariance(cov)


class ImuFactor:
    """
    IMU factor between X(i), V(i), X(j), V(j) and B(i).

    Error e ∈ R^9 (see PreintegrationBase.compute_error_and_jacobians):
        e = [f_p; f_v; f_R]

    The factor keeps its own copy of the preintegrated measurements, so the
    caller may reset and reuse its PreintegratedImuMeasurements right away.
    The noise model is the full preintegrated covariance, fixed at
    construction.
    """

    def __init__(self,
                 pose_i: int,
                 vel_i: int,
                 pose_j: int,
                 vel_j: int,
                 bias: int,
                 pim: PreintegratedImuMeasurements,
                 gravity: np.ndarray,
                 omega_coriolis: np.ndarray,
                 body_P_sensor: Optional[Pose3] = None,
                 use_2nd_order_coriolis: bool = False) -> None:
        self._keys = [int(pose_i), int(vel_i), int(pose_j), int(vel_j), int(bias)]
        self.pim = pim.copy()
        self.gravity = as_vector3(gravity, "gravity").copy()
        self.omega_coriolis = as_vector3(omega_coriolis, "omega_coriolis").copy()
        self.body_P_sensor = body_P_sensor
        self.use_2nd_order_coriolis = bool(use_2nd_order_coriolis)
        self.noise_model = covariance_noise_model(self.pim.preint_meas_cov)

        logger.debug(f"ImuFactor{tuple(self._keys)} over Δt={self.pim.delta_t_ij:.4f}s")

    @classmethod
    def from_params(cls, pose_i: int, vel_i: int, pose_j: int, vel_j: int, bias: int,
                    pim: PreintegratedImuMeasurements, params: ImuParams) -> 'ImuFactor':
        return cls(pose_i, vel_i, pose_j, vel_j, bias, pim,
                   gravity=params.gravity,
                   omega_coriolis=params.omega_coriolis,
                   body_P_sensor=params.body_P_sensor,
                   use_2nd_order_coriolis=params.use_2nd_order_coriolis)

    def keys(self) -> List[int]:
        return list(self._keys)

    # ------------- evaluation -------------

    def evaluate_error(self,
                       pose_i: Pose3,
                       vel_i: np.ndarray,
                       pose_j: Pose3,
                       vel_j: np.ndarray,
                       bias_i: gtsam.imuBias.ConstantBias,
                       compute_jacobians: bool = False
                       ) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        """
        Residual and (optionally) the Jacobians w.r.t. the five variables.

        Non-finite output is logged, not raised, so a single bad evaluation
        does not abort the optimizer.
        """
        error, jacobians = self.pim.compute_error_and_jacobians(
            pose_i, vel_i, pose_j, vel_j, bias_i,
            self.gravity, self.omega_coriolis,
            self.use_2nd_order_coriolis, compute_jacobians)

        if not np.isfinite(error).all():
            logger.warning(f"ImuFactor{tuple(self._keys)}: non-finite residual {error}")
        if jacobians is not None and not all(np.isfinite(H).all() for H in jacobians):
            logger.warning(f"ImuFactor{tuple(self._keys)}: non-finite Jacobian")

        return error, jacobians

    def whitened_error(self, pose_i: Pose3, vel_i: np.ndarray, pose_j: Pose3,
                       vel_j: np.ndarray, bias_i: gtsam.imuBias.ConstantBias) -> np.ndarray:
        error, _ = self.evaluate_error(pose_i, vel_i, pose_j, vel_j, bias_i)
        return np.asarray(self.noise_model.whiten(error), float)

    def custom_factor(self) -> gtsam.CustomFactor:
        """Register this factor with GTSAM as a CustomFactor."""
        keys = self.keys()

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            pose_i = values.atPose3(keys[0])
            vel_i = values.atVector(keys[1])
            pose_j = values.atPose3(keys[2])
            vel_j = values.atVector(keys[3])
            bias_i = values.atConstantBias(keys[4])

            error, H = self.evaluate_error(pose_i, vel_i, pose_j, vel_j, bias_i,
                                           compute_jacobians=jacobians is not None)
            if jacobians is not None:
                for k, H_k in enumerate(H):
                    jacobians[k] = H_k
            return error

        return gtsam.CustomFactor(self.noise_model, keys, error_fn)

    # ------------- testable -------------

    def clone(self) -> 'ImuFactor':
        return ImuFactor(*self._keys, self.pim,
                         gravity=self.gravity,
                         omega_coriolis=self.omega_coriolis,
                         body_P_sensor=self.body_P_sensor,
                         use_2nd_order_coriolis=self.use_2nd_order_coriolis)

    def equals(self, other: 'ImuFactor', tol: float = 1e-9) -> bool:
        if not isinstance(other, ImuFactor):
            return False
        if (self.body_P_sensor is None) != (other.body_P_sensor is None):
            return False
        if self.body_P_sensor is not None and not self.body_P_sensor.equals(other.body_P_sensor, tol):
            return False
        return (self._keys == other._keys
                and self.use_2nd_order_coriolis == other.use_2nd_order_coriolis
                and equal_with_abs_tol(self.gravity, other.gravity, tol)
                and equal_with_abs_tol(self.omega_coriolis, other.omega_coriolis, tol)
                and self.pim.equals(other.pim, tol))

    def __str__(self, key_formatter: Callable[[int], str] = str) -> str:
        keys = ",".join(key_formatter(k) for k in self._keys)
        mount = "none" if self.body_P_sensor is None else str(self.body_P_sensor)
        return (f"ImuFactor({keys})\n"
                f"  gravity: [ {self.gravity} ]\n"
                f"  omegaCoriolis: [ {self.omega_coriolis} ]\n"
                f"  use2ndOrderCoriolis: {self.use_2nd_order_coriolis}\n"
                f"  body_P_sensor: {mount}\n"
                f"  noise model: {self.noise_model}\n"
                f"  preintegrated measurements:\n{self.pim}")

    def print(self, s: str = "", key_formatter: Callable[[int], str] = str) -> None:
        print(f"{s}{self.__str__(key_formatter)}")
