from __future__ import annotations

import copy
from typing import List, Optional, Tuple

import numpy as np
import gtsam
from gtsam import Rot3, Pose3

from utilities.so3 import skew, right_jacobian_SO3, right_jacobian_inv_SO3
from utilities.states import PoseVelocityBias
from utilities.utils import as_vector3, equal_with_abs_tol
from logging_config import get_logger

logger = get_logger(__name__)


def bias_difference(bias: gtsam.imuBias.ConstantBias,
                    bias_hat: gtsam.imuBias.ConstantBias) -> Tuple[np.ndarray, np.ndarray]:
    """(δb_a, δb_ω) = bias - bias_hat."""
    acc_incr = np.asarray(bias.accelerometer(), float) - np.asarray(bias_hat.accelerometer(), float)
    omega_incr = np.asarray(bias.gyroscope(), float) - np.asarray(bias_hat.gyroscope(), float)
    return acc_incr, omega_incr


class PreintegrationBase:
    """
    Shared integration logic for IMU preintegration.

    Keeps the relative motion between keyframes i and j, integrated purely
    from IMU data with the bias estimate `bias_hat`:

        ΔR_ij : relative rotation            (gtsam.Rot3)
        Δv_ij : relative velocity            (3,)
        Δp_ij : relative position            (3,)
        Δt_ij : integrated time              [s]

    together with the first-order Jacobians of those deltas w.r.t. the bias,
    so a small bias change can be applied without re-integrating:

        ΔR(b) ≈ ΔR · Exp(∂R/∂b_ω δb_ω)
        Δv(b) ≈ Δv + ∂v/∂b_a δb_a + ∂v/∂b_ω δb_ω
        Δp(b) ≈ Δp + ∂p/∂b_a δb_a + ∂p/∂b_ω δb_ω
    """

    def __init__(self,
                 bias_hat: Optional[gtsam.imuBias.ConstantBias] = None,
                 use_2nd_order_integration: bool = False) -> None:
        self.bias_hat = bias_hat if bias_hat is not None else gtsam.imuBias.ConstantBias()
        self.use_2nd_order_integration = bool(use_2nd_order_integration)
        self.reset_integration()

    # ------------- state -------------

    def reset_integration(self) -> None:
        """Reset deltas to identity/zero and bias Jacobians to zero."""
        self.delta_t_ij = 0.0
        self.delta_R_ij = Rot3()
        self.delta_p_ij = np.zeros(3)
        self.delta_v_ij = np.zeros(3)

        self.delR_delBiasOmega = np.zeros((3, 3))
        self.delP_delBiasAcc = np.zeros((3, 3))
        self.delP_delBiasOmega = np.zeros((3, 3))
        self.delV_delBiasAcc = np.zeros((3, 3))
        self.delV_delBiasOmega = np.zeros((3, 3))

    @property
    def theta_ij(self) -> np.ndarray:
        """Accumulated rotation as a rotation vector, Log(ΔR_ij)."""
        return np.asarray(Rot3.Logmap(self.delta_R_ij), float)

    def copy(self) -> 'PreintegrationBase':
        """Independent copy. gtsam value types are immutable, arrays are copied."""
        other = copy.copy(self)
        for name, value in vars(self).items():
            if isinstance(value, np.ndarray):
                setattr(other, name, value.copy())
        return other

    # ------------- measurement correction -------------

    def correct_measurements(self,
                             measured_acc: np.ndarray,
                             measured_omega: np.ndarray,
                             body_P_sensor: Optional[Pose3] = None
                             ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Remove the bias and, optionally, express the measurement in the body frame.

        With body_P_sensor = (R_bs, t_bs):

            ω_b = R_bs (ω_s - b_ω)
            a_b = R_bs (a_s - b_a) - [ω_b]× [ω_b]× t_bs

        The last term removes the centripetal acceleration the accelerometer
        sees because it sits at lever arm t_bs from the body origin.
        """
        acc = as_vector3(measured_acc, "measured_acc") - np.asarray(self.bias_hat.accelerometer(), float)
        omega = as_vector3(measured_omega, "measured_omega") - np.asarray(self.bias_hat.gyroscope(), float)

        if body_P_sensor is not None:
            body_R_sensor = body_P_sensor.rotation().matrix()
            omega = body_R_sensor @ omega
            omega_skew = skew(omega)
            lever_arm = np.asarray(body_P_sensor.translation(), float).reshape(3)
            acc = body_R_sensor @ acc - omega_skew @ omega_skew @ lever_arm

        return acc, omega

    # ------------- incremental updates -------------

    def update_preintegrated_jacobians(self,
                                       corrected_acc: np.ndarray,
                                       Jr_theta_incr: np.ndarray,
                                       R_incr: Rot3,
                                       dt: float) -> None:
        """Bias Jacobian recursion. Must run before the deltas are advanced."""
        dR = self.delta_R_ij.matrix()
        temp = -dR @ skew(corrected_acc) * dt @ self.delR_delBiasOmega

        if not self.use_2nd_order_integration:
            self.delP_delBiasAcc = self.delP_delBiasAcc + self.delV_delBiasAcc * dt
            self.delP_delBiasOmega = self.delP_delBiasOmega + self.delV_delBiasOmega * dt
        else:
            self.delP_delBiasAcc = self.delP_delBiasAcc + self.delV_delBiasAcc * dt - 0.5 * dR * dt**2
            self.delP_delBiasOmega = self.delP_delBiasOmega + dt * (self.delV_delBiasOmega + 0.5 * temp)

        self.delV_delBiasAcc = self.delV_delBiasAcc - dR * dt
        self.delV_delBiasOmega = self.delV_delBiasOmega + temp

        self.delR_delBiasOmega = R_incr.matrix().T @ self.delR_delBiasOmega - Jr_theta_incr * dt

    def update_preintegrated_measurements(self,
                                          corrected_acc: np.ndarray,
                                          R_incr: Rot3,
                                          dt: float) -> None:
        """Advance Δp, Δv, ΔR and Δt by one sample."""
        temp = self.delta_R_ij.matrix() @ corrected_acc * dt

        if not self.use_2nd_order_integration:
            self.delta_p_ij = self.delta_p_ij + self.delta_v_ij * dt
        else:
            self.delta_p_ij = self.delta_p_ij + self.delta_v_ij * dt + 0.5 * temp * dt

        self.delta_v_ij = self.delta_v_ij + temp
        self.delta_R_ij = self.delta_R_ij.compose(R_incr)
        self.delta_t_ij += dt

    # ------------- bias correction -------------

    def biascorrected_delta_R_ij(self, bias_omega_incr: np.ndarray) -> Rot3:
        """ΔR_ij · Exp(∂R/∂b_ω · δb_ω)"""
        return self.delta_R_ij.compose(Rot3.Expmap(self.delR_delBiasOmega @ bias_omega_incr))

    def biascorrected_theta_ij(self, bias_omega_incr: np.ndarray) -> np.ndarray:
        return np.asarray(Rot3.Logmap(self.biascorrected_delta_R_ij(bias_omega_incr)), float)

    def _biascorrected_deltas(self, bias_acc_incr: np.ndarray,
                              bias_omega_incr: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        delta_p = (self.delta_p_ij
                   + self.delP_delBiasAcc @ bias_acc_incr
                   + self.delP_delBiasOmega @ bias_omega_incr)
        delta_v = (self.delta_v_ij
                   + self.delV_delBiasAcc @ bias_acc_incr
                   + self.delV_delBiasOmega @ bias_omega_incr)
        return delta_p, delta_v

    # ------------- prediction -------------

    def predict(self,
                pose_i: Pose3,
                vel_i: np.ndarray,
                bias_i: gtsam.imuBias.ConstantBias,
                gravity: np.ndarray,
                omega_coriolis: np.ndarray,
                use_2nd_order_coriolis: bool = False) -> PoseVelocityBias:
        """
        Predict the state at time j from the state at time i.

            p_j = p_i + R_i Δp̃ + v_i Δt - [ω_c]× v_i Δt² + ½ g Δt²
            v_j = v_i + R_i Δṽ - 2[ω_c]× v_i Δt + g Δt
            R_j = R_i Exp(Log(ΔR̃) - R_iᵀ ω_c Δt)

        The bias is predicted as constant.
        """
        vel_i = as_vector3(vel_i, "vel_i")
        gravity = as_vector3(gravity, "gravity")
        omega_coriolis = as_vector3(omega_coriolis, "omega_coriolis")
        bias_acc_incr, bias_omega_incr = bias_difference(bias_i, self.bias_hat)
        dt = self.delta_t_ij

        R_i = pose_i.rotation()
        Ri = R_i.matrix()
        pos_i = np.asarray(pose_i.translation(), float).reshape(3)
        delta_p, delta_v = self._biascorrected_deltas(bias_acc_incr, bias_omega_incr)
        omega_skew = skew(omega_coriolis)

        pos_j = (pos_i + Ri @ delta_p + vel_i * dt
                 - omega_skew @ vel_i * dt**2  # Coriolis, factor 2 dropped as in the velocity integral
                 + 0.5 * gravity * dt**2)
        vel_j = (vel_i + Ri @ delta_v
                 - 2 * omega_skew @ vel_i * dt
                 + gravity * dt)

        if use_2nd_order_coriolis:
            pos_j = pos_j - 0.5 * omega_skew @ omega_skew @ pos_i * dt**2
            vel_j = vel_j - omega_skew @ omega_skew @ pos_i * dt

        theta_bc = self.biascorrected_theta_ij(bias_omega_incr)
        theta_bcc = theta_bc - Ri.T @ omega_coriolis * dt
        R_j = R_i.compose(Rot3.Expmap(theta_bcc))

        return PoseVelocityBias(pose=Pose3(R_j, pos_j), velocity=vel_j, bias=bias_i)

    # ------------- residual -------------

    def compute_error_and_jacobians(self,
                                    pose_i: Pose3,
                                    vel_i: np.ndarray,
                                    pose_j: Pose3,
                                    vel_j: np.ndarray,
                                    bias_i: gtsam.imuBias.ConstantBias,
                                    gravity: np.ndarray,
                                    omega_coriolis: np.ndarray,
                                    use_2nd_order_coriolis: bool = False,
                                    compute_jacobians: bool = False
                                    ) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        """
        Residual e = [f_p; f_v; f_R] ∈ R^9 between the observed state at j and
        the state predicted from i with the bias-corrected deltas:

            f_p = p_j - p_i - R_i Δp̃ - v_i Δt + [ω_c]× v_i Δt² - ½ g Δt²
            f_v = v_j - v_i - R_i Δṽ + 2[ω_c]× v_i Δt - g Δt
            f_R = Log( Exp(θ_bcc)⁻¹ R_iᵀ R_j )

        Jacobians use the pose retraction R ← R Exp(δθ), p ← p + R δp with
        tangent ordering [δθ, δp], and bias ordering [δb_a, δb_ω].

        Returns:
            (e, [H_pose_i (9x6), H_vel_i (9x3), H_pose_j (9x6),
                 H_vel_j (9x3), H_bias_i (9x6)]) or (e, None)
        """
        vel_i = as_vector3(vel_i, "vel_i")
        vel_j = as_vector3(vel_j, "vel_j")
        gravity = as_vector3(gravity, "gravity")
        omega_coriolis = as_vector3(omega_coriolis, "omega_coriolis")
        bias_acc_incr, bias_omega_incr = bias_difference(bias_i, self.bias_hat)
        dt = self.delta_t_ij

        R_i = pose_i.rotation()
        R_j = pose_j.rotation()
        Ri = R_i.matrix()
        Rj = R_j.matrix()
        pos_i = np.asarray(pose_i.translation(), float).reshape(3)
        pos_j = np.asarray(pose_j.translation(), float).reshape(3)
        omega_skew = skew(omega_coriolis)
        delta_p, delta_v = self._biascorrected_deltas(bias_acc_incr, bias_omega_incr)

        # rotation: bias correction then Coriolis correction
        theta_bc = self.biascorrected_theta_ij(bias_omega_incr)
        coriolis_rot = Ri.T @ omega_coriolis * dt
        theta_bcc = theta_bc - coriolis_rot
        delta_R_bcc = Rot3.Expmap(theta_bcc)
        fRhat = delta_R_bcc.between(R_i.between(R_j))
        fR = np.asarray(Rot3.Logmap(fRhat), float)

        fp = (pos_j - pos_i - Ri @ delta_p - vel_i * dt
              + omega_skew @ vel_i * dt**2
              - 0.5 * gravity * dt**2)
        fv = (vel_j - vel_i - Ri @ delta_v
              + 2 * omega_skew @ vel_i * dt
              - gravity * dt)

        if use_2nd_order_coriolis:
            fp = fp + 0.5 * omega_skew @ omega_skew @ pos_i * dt**2
            fv = fv + omega_skew @ omega_skew @ pos_i * dt

        error = np.concatenate((fp, fv, fR))
        if not compute_jacobians:
            return error, None

        Z3 = np.zeros((3, 3))
        I3 = np.eye(3)
        Jr_theta_bcc = right_jacobian_SO3(theta_bcc)
        Jrinv_fRhat = right_jacobian_inv_SO3(fR)
        fRhat_inv = fRhat.matrix().T
        Jtheta = -Jr_theta_bcc @ skew(coriolis_rot)

        # --- pose_i ---
        if use_2nd_order_coriolis:
            dfP_dPi = -Ri + 0.5 * omega_skew @ omega_skew @ Ri * dt**2
            dfV_dPi = omega_skew @ omega_skew @ Ri * dt
        else:
            dfP_dPi = -Ri
            dfV_dPi = Z3
        H1 = np.block([
            [Ri @ skew(delta_p), dfP_dPi],
            [Ri @ skew(delta_v), dfV_dPi],
            [Jrinv_fRhat @ (-Rj.T @ Ri - fRhat_inv @ Jtheta), Z3],
        ])

        # --- vel_i ---
        H2 = np.vstack([
            -I3 * dt + omega_skew * dt**2,
            -I3 + 2 * omega_skew * dt,
            Z3,
        ])

        # --- pose_j ---
        H3 = np.block([
            [Z3, Rj],
            [Z3, Z3],
            [Jrinv_fRhat, Z3],
        ])

        # --- vel_j ---
        H4 = np.vstack([Z3, I3, Z3])

        # --- bias_i ---
        Jrinv_theta_bc = right_jacobian_inv_SO3(theta_bc)
        Jr_bias_omega_incr = right_jacobian_SO3(self.delR_delBiasOmega @ bias_omega_incr)
        J_bias_omega = Jr_theta_bcc @ Jrinv_theta_bc @ Jr_bias_omega_incr @ self.delR_delBiasOmega
        H5 = np.block([
            [-Ri @ self.delP_delBiasAcc, -Ri @ self.delP_delBiasOmega],
            [-Ri @ self.delV_delBiasAcc, -Ri @ self.delV_delBiasOmega],
            [Z3, Jrinv_fRhat @ (-fRhat_inv @ J_bias_omega)],
        ])

        return error, [H1, H2, H3, H4, H5]

    # ------------- testable -------------

    def equals(self, other: 'PreintegrationBase', tol: float = 1e-9) -> bool:
        if not isinstance(other, PreintegrationBase):
            return False
        return (self.bias_hat.equals(other.bias_hat, tol)
                and self.use_2nd_order_integration == other.use_2nd_order_integration
                and abs(self.delta_t_ij - other.delta_t_ij) <= tol
                and equal_with_abs_tol(self.delta_p_ij, other.delta_p_ij, tol)
                and equal_with_abs_tol(self.delta_v_ij, other.delta_v_ij, tol)
                and self.delta_R_ij.equals(other.delta_R_ij, tol)
                and equal_with_abs_tol(self.delR_delBiasOmega, other.delR_delBiasOmega, tol)
                and equal_with_abs_tol(self.delP_delBiasAcc, other.delP_delBiasAcc, tol)
                and equal_with_abs_tol(self.delP_delBiasOmega, other.delP_delBiasOmega, tol)
                and equal_with_abs_tol(self.delV_delBiasAcc, other.delV_delBiasAcc, tol)
                and equal_with_abs_tol(self.delV_delBiasOmega, other.delV_delBiasOmega, tol))

    def __str__(self) -> str:
        acc = np.asarray(self.bias_hat.accelerometer(), float)
        gyro = np.asarray(self.bias_hat.gyroscope(), float)
        return (f"    deltaTij [{self.delta_t_ij}]\n"
                f"    deltaRij.ypr = ({self.delta_R_ij.ypr()})\n"
                f"    deltaPij [ {self.delta_p_ij} ]\n"
                f"    deltaVij [ {self.delta_v_ij} ]\n"
                f"    biasHat acc: {acc} gyro: {gyro}\n"
                f"    use2ndOrderIntegration: {self.use_2nd_order_integration}")

    def print(self, s: str = "") -> None:
        print(f"{s}\n{self}")
