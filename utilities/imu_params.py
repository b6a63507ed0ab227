from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.linalg
import gtsam

from utilities.utils import as_matrix, as_vector3, load_yaml
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ImuParams:
    """
    Continuous-time IMU noise model and navigation-frame constants.

    Noise densities are given per axis:

        σ_a  : accelerometer white noise      [m/s²/√Hz]
        σ_g  : gyroscope white noise          [rad/s/√Hz]
        σ_i  : integration (position) error   [m/s/√Hz]

    and become isotropic 3×3 covariances σ² I₃. These are stacked into the
    9×9 block-diagonal measurement covariance ordered like the preintegrated
    error state [δp; δv; δθ]:

        Q_c = blkdiag(Σ_int, Σ_acc, Σ_gyro)
    """
    accelerometer_covariance: np.ndarray
    gyroscope_covariance: np.ndarray
    integration_covariance: np.ndarray
    gravity: np.ndarray
    omega_coriolis: np.ndarray
    use_2nd_order_integration: bool = False
    use_2nd_order_coriolis: bool = False
    body_P_sensor: Optional[gtsam.Pose3] = None

    def __post_init__(self):
        self.accelerometer_covariance = as_matrix(
            self.accelerometer_covariance, (3, 3), "accelerometer_covariance")
        self.gyroscope_covariance = as_matrix(
            self.gyroscope_covariance, (3, 3), "gyroscope_covariance")
        self.integration_covariance = as_matrix(
            self.integration_covariance, (3, 3), "integration_covariance")
        self.gravity = as_vector3(self.gravity, "gravity")
        self.omega_coriolis = as_vector3(self.omega_coriolis, "omega_coriolis")

    @classmethod
    def from_yaml(cls, config_path: str = "configs/imu_params.yaml") -> "ImuParams":
        config = load_yaml(config_path)
        imu_cfg = config["imu"]
        nav_cfg = config["navigation"]

        sigma_a = float(imu_cfg["accelerometer_sigma"])
        sigma_g = float(imu_cfg["gyroscope_sigma"])
        sigma_i = float(imu_cfg.get("integration_sigma", 0.0))

        body_P_sensor = None
        mount_cfg = config.get("body_P_sensor")
        if mount_cfg is not None:
            roll, pitch, yaw = as_vector3(mount_cfg.get("rotation_rpy", [0.0, 0.0, 0.0]),
                                          "body_P_sensor.rotation_rpy")
            t = as_vector3(mount_cfg.get("translation", [0.0, 0.0, 0.0]),
                           "body_P_sensor.translation")
            body_P_sensor = gtsam.Pose3(gtsam.Rot3.RzRyRx(roll, pitch, yaw), t)

        params = cls(
            accelerometer_covariance=sigma_a**2 * np.eye(3),
            gyroscope_covariance=sigma_g**2 * np.eye(3),
            integration_covariance=sigma_i**2 * np.eye(3),
            gravity=nav_cfg.get("gravity", [0.0, 0.0, -9.81]),
            omega_coriolis=nav_cfg.get("omega_coriolis", [0.0, 0.0, 0.0]),
            use_2nd_order_integration=bool(imu_cfg.get("use_2nd_order_integration", False)),
            use_2nd_order_coriolis=bool(nav_cfg.get("use_2nd_order_coriolis", False)),
            body_P_sensor=body_P_sensor,
        )

        logger.info(f"ImuParams loaded from {config_path}: σ_a={sigma_a:.3e}, "
                    f"σ_g={sigma_g:.3e}, σ_int={sigma_i:.3e}, g={params.gravity}")
        return params

    @property
    def measurement_covariance(self) -> np.ndarray:
        """Continuous-time measurement covariance Q_c (9x9)."""
        return scipy.linalg.block_diag(
            self.integration_covariance,
            self.accelerometer_covariance,
            self.gyroscope_covariance,
        )
