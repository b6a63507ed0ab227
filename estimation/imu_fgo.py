from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import numpy as np
import gtsam

from estimation.imu_factor import ImuFactor, PreintegratedImuMeasurements
from utilities.imu_params import ImuParams
from utilities.states import PoseVelocityBias
from logging_config import get_logger

logger = get_logger(__name__)


class ImuFGO:
    """
    GTSAM factor graph over IMU keyframes.

    Nodes per keyframe i:
        X(i) : Pose3   (body pose in navigation frame)
        V(i) : Vector3 (velocity in navigation frame)
    plus one shared bias node B(0).

    Factors:
        - priors on X(0), V(0), B(0)
        - IMU factor between X(i), V(i), X(i+1), V(i+1), B(0)
        - optional absolute pose measurements on X(i)
    """

    def __init__(
        self,
        params: ImuParams,
        max_iters: int = 30,
        tol: float = 1e-9,
        prior_pose_sigmas: Optional[np.ndarray] = None,
        prior_vel_sigma: float = 1e-2,
        prior_bias_sigmas: Optional[np.ndarray] = None,
    ):
        self.params = params
        self.max_iters = max_iters
        self.tol = tol

        if prior_pose_sigmas is None:
            prior_pose_sigmas = [1e-3] * 3 + [1e-2] * 3
        if prior_bias_sigmas is None:
            prior_bias_sigmas = [1e-2] * 3 + [1e-3] * 3

        # Pose3 tangent ordering is [rotation, translation]
        self.prior_pose_noise = gtsam.noiseModel.Diagonal.Sigmas(np.array(prior_pose_sigmas, dtype=float))
        self.prior_vel_noise = gtsam.noiseModel.Isotropic.Sigma(3, float(prior_vel_sigma))
        # ConstantBias tangent ordering is [acc, gyro]
        self.prior_bias_noise = gtsam.noiseModel.Diagonal.Sigmas(np.array(prior_bias_sigmas, dtype=float))

    # ------------- key helpers -------------

    @staticmethod
    def X(i: int) -> int:
        return gtsam.symbol("x", i)

    @staticmethod
    def V(i: int) -> int:
        return gtsam.symbol("v", i)

    @staticmethod
    def B(i: int) -> int:
        return gtsam.symbol("b", i)

    # ------------- factor builders -------------

    def make_imu_factor(self, i: int, pim: PreintegratedImuMeasurements) -> ImuFactor:
        """IMU factor between keyframes i and i+1, sharing the bias node B(0)."""
        return ImuFactor.from_params(
            self.X(i), self.V(i), self.X(i + 1), self.V(i + 1), self.B(0),
            pim, self.params,
        )

    def make_pose_factor(self, i: int, pose: gtsam.Pose3,
                         sigmas: np.ndarray) -> gtsam.PriorFactorPose3:
        noise = gtsam.noiseModel.Diagonal.Sigmas(np.asarray(sigmas, float))
        return gtsam.PriorFactorPose3(self.X(i), pose, noise)

    # ------------- graph builder -------------

    def build_graph(
        self,
        pims: List[PreintegratedImuMeasurements],
        initial_state: PoseVelocityBias,
        pose_measurements: Optional[Dict[int, Tuple[gtsam.Pose3, np.ndarray]]] = None,
    ) -> tuple:
        """
        Chain of IMU factors, one per preintegrated interval.

        Initial values come from dead-reckoning with PreintegrationBase.predict.
        pose_measurements maps keyframe index -> (pose, 6 sigmas).
        """
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()

        bias = initial_state.bias
        values.insert(self.X(0), initial_state.pose)
        values.insert(self.V(0), initial_state.velocity)
        values.insert(self.B(0), bias)

        graph.add(gtsam.PriorFactorPose3(self.X(0), initial_state.pose, self.prior_pose_noise))
        graph.add(gtsam.PriorFactorVector(self.V(0), initial_state.velocity, self.prior_vel_noise))
        graph.add(gtsam.PriorFactorConstantBias(self.B(0), bias, self.prior_bias_noise))

        state = initial_state
        for i, pim in enumerate(pims):
            graph.add(self.make_imu_factor(i, pim).custom_factor())

            state = pim.predict(state.pose, state.velocity, bias,
                                self.params.gravity, self.params.omega_coriolis,
                                self.params.use_2nd_order_coriolis)
            values.insert(self.X(i + 1), state.pose)
            values.insert(self.V(i + 1), state.velocity)

        for i, (pose, sigmas) in (pose_measurements or {}).items():
            if not 0 <= i <= len(pims):
                raise ValueError(f"Pose measurement for unknown keyframe {i}")
            graph.add(self.make_pose_factor(i, pose, sigmas))

        logger.debug(f"Built graph with {graph.size()} factors over {len(pims) + 1} keyframes")
        return graph, values

    # ------------- optimization -------------

    def optimize(
        self,
        pims: List[PreintegratedImuMeasurements],
        initial_state: PoseVelocityBias,
        pose_measurements: Optional[Dict[int, Tuple[gtsam.Pose3, np.ndarray]]] = None,
        initial_values: Optional[gtsam.Values] = None,
    ) -> List[PoseVelocityBias]:
        """
        Build and solve the factor graph.

        Returns one PoseVelocityBias per keyframe, all carrying the
        estimated shared bias.
        """
        graph, values = self.build_graph(pims, initial_state, pose_measurements)
        if initial_values is not None:
            values = initial_values

        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(self.max_iters)
        params.setAbsoluteErrorTol(self.tol)
        params.setRelativeErrorTol(self.tol)

        optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, params)
        result = optimizer.optimize()
        logger.info(f"LM finished after {optimizer.iterations()} iterations, "
                    f"error {graph.error(values):.3e} -> {graph.error(result):.3e}")

        bias = result.atConstantBias(self.B(0))
        return [
            PoseVelocityBias(pose=result.atPose3(self.X(i)),
                             velocity=result.atVector(self.V(i)),
                             bias=bias)
            for i in range(len(pims) + 1)
        ]
