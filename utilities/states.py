import numpy as np
from dataclasses import dataclass
import gtsam

from utilities.utils import as_vector3, equal_with_abs_tol


@dataclass
class PoseVelocityBias:
    """Navigation state at one keyframe time.

    Attributes:
        pose     : body pose in the navigation frame (gtsam.Pose3)
        velocity : body velocity in the navigation frame (3,)
        bias     : IMU bias (gtsam.imuBias.ConstantBias)
    """
    pose: gtsam.Pose3
    velocity: np.ndarray  # shape (3,)
    bias: gtsam.imuBias.ConstantBias

    def __post_init__(self):
        self.velocity = as_vector3(self.velocity, "velocity")

    @property
    def position(self) -> np.ndarray:
        return np.asarray(self.pose.translation(), float).reshape(3)

    @property
    def rotation(self) -> gtsam.Rot3:
        return self.pose.rotation()

    def equals(self, other: 'PoseVelocityBias', tol: float = 1e-9) -> bool:
        if not isinstance(other, PoseVelocityBias):
            return False
        return (self.pose.equals(other.pose, tol)
                and equal_with_abs_tol(self.velocity, other.velocity, tol)
                and self.bias.equals(other.bias, tol))
