#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Bundle adjustment for small metric and projective scenes.

The scene is packed into a single parameter vector (free camera parameters
first, then points) and refined with scipy.optimize.least_squares using a
sparse Jacobian pattern. Parameters of a scene are written back only when
the optimization succeeded.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from pairwise_sfm.config.reconstruction_config import BundleAdjustmentConfig
from pairwise_sfm.core.camera import CameraExtrinsics, CameraIntrinsics
from pairwise_sfm.utils.transforms import (rodrigues_to_rotation_matrix, rotate_by_rodrigues,
                                           rotation_matrix_to_rodrigues)

logger = logging.getLogger(__name__)


@dataclass
class SceneObservations:
    """Pixel observations, one row per (view, point) pair."""
    view_indices: np.ndarray
    point_indices: np.ndarray
    pixels: np.ndarray

    def __len__(self) -> int:
        return len(self.view_indices)

    @classmethod
    def from_tracks(cls, pixels: List[np.ndarray]) -> 'SceneObservations':
        """Every point j is observed at pixels[v][j] in every view v."""
        num_views = len(pixels)
        num_points = len(pixels[0])
        return cls(
            view_indices=np.repeat(np.arange(num_views), num_points),
            point_indices=np.tile(np.arange(num_points), num_views),
            pixels=np.vstack(pixels).astype(float),
        )


@dataclass
class MetricSceneStructure:
    """Cameras with world_to_view poses and Euclidean points."""
    intrinsics: List[CameraIntrinsics]
    poses: List[CameraExtrinsics]
    points: np.ndarray
    fixed_intrinsics: List[bool] = field(default_factory=list)
    fixed_poses: List[bool] = field(default_factory=list)

    def __post_init__(self):
        if not self.fixed_intrinsics:
            self.fixed_intrinsics = [False] * len(self.intrinsics)
        if not self.fixed_poses:
            self.fixed_poses = [False] * len(self.poses)

    @property
    def num_views(self) -> int:
        return len(self.poses)


@dataclass
class ProjectiveSceneStructure:
    """3x4 projective cameras and homogeneous points."""
    cameras: List[np.ndarray]
    points: np.ndarray  # Nx4
    fixed: List[bool] = field(default_factory=list)

    def __post_init__(self):
        if not self.fixed:
            self.fixed = [False] * len(self.cameras)

    @property
    def num_views(self) -> int:
        return len(self.cameras)


@dataclass
class BundleAdjustmentResult:
    """Outcome of a single optimization."""
    success: bool
    initial_cost: float
    final_cost: float
    rms_error: float  # Root mean square pixel error over observations
    residuals: np.ndarray  # Mx2 pixel residuals
    nfev: int = 0
    message: str = ""

    def point_rms(self, point_indices: np.ndarray, num_points: int) -> np.ndarray:
        """RMS pixel error of each point over its observations."""
        squared = np.sum(self.residuals ** 2, axis=1)
        total = np.bincount(point_indices, weights=squared, minlength=num_points)
        count = np.bincount(point_indices, minlength=num_points)
        return np.sqrt(total / np.maximum(count, 1))


def robust_cost(residuals: np.ndarray, loss: str, f_scale: float) -> float:
    """Cost as reported by least_squares for the given loss."""
    z = (np.asarray(residuals).ravel() / f_scale) ** 2
    if loss == "linear":
        rho = z
    elif loss == "soft_l1":
        rho = 2.0 * (np.sqrt(1.0 + z) - 1.0)
    elif loss == "huber":
        rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    elif loss == "cauchy":
        rho = np.log1p(z)
    elif loss == "arctan":
        rho = np.arctan(z)
    else:
        raise ValueError(f"Unknown loss '{loss}'")
    return float(0.5 * f_scale ** 2 * np.sum(rho))


class _BundleAdjustmentBase:
    """Shared optimization and result handling."""

    def __init__(self, config: Optional[BundleAdjustmentConfig] = None):
        self.config = config or BundleAdjustmentConfig()
        self.verbose: Optional[logging.Logger] = None

    def set_verbose(self, verbose: Optional[logging.Logger]):
        self.verbose = verbose

    def _optimize(self, fun, x0: np.ndarray, sparsity, num_observations: int) -> Tuple[BundleAdjustmentResult, np.ndarray]:
        cfg = self.config
        r0 = fun(x0)
        if not np.all(np.isfinite(r0)):
            return self._failed("Initial residuals are not finite", r0, num_observations), x0

        initial_cost = robust_cost(r0, cfg.loss, cfg.loss_scale)
        try:
            result = least_squares(
                fun,
                x0,
                jac_sparsity=sparsity,
                method="trf",
                x_scale="jac",
                loss=cfg.loss,
                f_scale=cfg.loss_scale,
                ftol=cfg.ftol,
                xtol=cfg.xtol,
                gtol=cfg.gtol,
                max_nfev=cfg.max_iterations,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            return self._failed(f"Solver error: {e}", r0, num_observations), x0

        residuals = result.fun.reshape(-1, 2)
        rms = float(np.sqrt(np.mean(np.sum(residuals ** 2, axis=1))))
        output = BundleAdjustmentResult(
            success=True,
            initial_cost=initial_cost,
            final_cost=float(result.cost),
            rms_error=rms,
            residuals=residuals,
            nfev=int(result.nfev),
            message=str(result.message),
        )

        if not (np.all(np.isfinite(result.x)) and np.isfinite(result.cost)):
            output.success = False
            output.message = "Parameters are not finite"
        elif result.status < 0:
            output.success = False
        elif result.cost > initial_cost * (1.0 + 1e-9) + 1e-12:
            output.success = False
            output.message = f"Cost increased from {initial_cost:.4g} to {result.cost:.4g}"
        elif result.status == 0:
            logger.warning(f"Bundle adjustment stopped after {result.nfev} evaluations without converging")

        if self.verbose is not None:
            self.verbose.info(f"BA: cost {initial_cost:.4g} -> {output.final_cost:.4g}, "
                              f"rms={rms:.4f} px, nfev={output.nfev}, success={output.success}")
        return output, result.x

    def _failed(self, message: str, r0: np.ndarray, num_observations: int) -> BundleAdjustmentResult:
        logger.debug(f"Bundle adjustment failed: {message}")
        return BundleAdjustmentResult(False, float("inf"), float("inf"), float("inf"),
                                      np.asarray(r0).reshape(num_observations, 2), 0, message)


class MetricBundleAdjustment(_BundleAdjustmentBase):
    """Refines simplified pinhole intrinsics, poses and points.

    Free intrinsics contribute their focal length (and k1, k2 when
    `refine_distortion` is on), free poses a Rodrigues vector and a
    translation. The principal point is never optimized.
    """

    def _layout(self, structure: MetricSceneStructure) -> Tuple[Dict, int]:
        cfg = self.config
        meta = {"intrinsics": {}, "pose": {}}
        offset = 0
        for i in range(structure.num_views):
            if not structure.fixed_intrinsics[i] and cfg.refine_intrinsics:
                size = 3 if cfg.refine_distortion else 1
                meta["intrinsics"][i] = slice(offset, offset + size)
                offset += size
        for i in range(structure.num_views):
            if not structure.fixed_poses[i]:
                meta["pose"][i] = slice(offset, offset + 6)
                offset += 6
        meta["points"] = offset
        return meta, offset + structure.points.size

    def _pack(self, structure: MetricSceneStructure, meta: Dict, size: int) -> np.ndarray:
        x = np.zeros(size)
        for i, sl in meta["intrinsics"].items():
            intr = structure.intrinsics[i]
            x[sl] = [intr.focal, intr.k1, intr.k2][:sl.stop - sl.start]
        for i, sl in meta["pose"].items():
            pose = structure.poses[i]
            x[sl] = np.concatenate([rotation_matrix_to_rodrigues(pose.R), pose.t])
        x[meta["points"]:] = structure.points.ravel()
        return x

    def _unpack(self, x: np.ndarray, structure: MetricSceneStructure, meta: Dict):
        for i, sl in meta["intrinsics"].items():
            intr = structure.intrinsics[i]
            values = x[sl]
            intr.fx = intr.fy = float(values[0])
            if len(values) == 3:
                intr.k1, intr.k2 = float(values[1]), float(values[2])
        for i, sl in meta["pose"].items():
            params = x[sl]
            structure.poses[i] = CameraExtrinsics(rodrigues_to_rotation_matrix(params[:3]), params[3:6])
        structure.points = x[meta["points"]:].reshape(-1, 3).copy()

    def _sparsity(self, structure: MetricSceneStructure, obs: SceneObservations, meta: Dict, size: int):
        A = lil_matrix((2 * len(obs), size), dtype=int)
        rows = np.arange(len(obs))
        for i, sl in list(meta["intrinsics"].items()) + list(meta["pose"].items()):
            selected = rows[obs.view_indices == i]
            for col in range(sl.start, sl.stop):
                A[2 * selected, col] = 1
                A[2 * selected + 1, col] = 1
        for k in range(3):
            cols = meta["points"] + 3 * obs.point_indices + k
            A[2 * rows, cols] = 1
            A[2 * rows + 1, cols] = 1
        return A

    def process(self, structure: MetricSceneStructure, observations: SceneObservations) -> BundleAdjustmentResult:
        """Optimize `structure` in place.

        Args:
            structure: Scene to refine, modified only on success
            observations: Pixel observations of the structure's points

        Returns:
            Optimization result
        """
        meta, size = self._layout(structure)
        x0 = self._pack(structure, meta, size)

        num_views = structure.num_views
        fx = np.array([c.fx for c in structure.intrinsics])
        fy = np.array([c.fy for c in structure.intrinsics])
        cx = np.array([c.cx for c in structure.intrinsics])
        cy = np.array([c.cy for c in structure.intrinsics])
        k1 = np.array([c.k1 for c in structure.intrinsics])
        k2 = np.array([c.k2 for c in structure.intrinsics])
        rvecs = np.array([rotation_matrix_to_rodrigues(p.R) for p in structure.poses])
        tvecs = np.array([p.t for p in structure.poses])

        v = observations.view_indices
        p = observations.point_indices
        observed = observations.pixels

        def residuals(x: np.ndarray) -> np.ndarray:
            _fx, _fy, _k1, _k2 = fx.copy(), fy.copy(), k1.copy(), k2.copy()
            _r, _t = rvecs.copy(), tvecs.copy()
            for i, sl in meta["intrinsics"].items():
                values = x[sl]
                _fx[i] = _fy[i] = values[0]
                if len(values) == 3:
                    _k1[i], _k2[i] = values[1], values[2]
            for i, sl in meta["pose"].items():
                _r[i] = x[sl][:3]
                _t[i] = x[sl][3:6]
            points = x[meta["points"]:].reshape(-1, 3)

            Xc = rotate_by_rodrigues(_r[v], points[p]) + _t[v]
            with np.errstate(divide='ignore', invalid='ignore'):
                xn = Xc[:, 0] / Xc[:, 2]
                yn = Xc[:, 1] / Xc[:, 2]
            r2 = xn * xn + yn * yn
            d = 1.0 + _k1[v] * r2 + _k2[v] * r2 * r2
            u = _fx[v] * d * xn + cx[v]
            w = _fy[v] * d * yn + cy[v]
            return np.column_stack([u - observed[:, 0], w - observed[:, 1]]).ravel()

        sparsity = self._sparsity(structure, observations, meta, size)
        logger.debug(f"Metric BA: {num_views} views, {len(structure.points)} points, "
                     f"{len(observations)} observations, {size} parameters")
        result, x = self._optimize(residuals, x0, sparsity, len(observations))
        if result.success:
            self._unpack(x, structure, meta)
        return result


class ProjectiveBundleAdjustment(_BundleAdjustmentBase):
    """Refines 3x4 projective cameras and homogeneous points."""

    def process(self, structure: ProjectiveSceneStructure, observations: SceneObservations) -> BundleAdjustmentResult:
        """Optimize `structure` in place, cameras are renormalized on success."""
        free = [i for i in range(structure.num_views) if not structure.fixed[i]]
        camera_slot = {i: slice(12 * k, 12 * (k + 1)) for k, i in enumerate(free)}
        point_offset = 12 * len(free)

        points0 = structure.points / np.linalg.norm(structure.points, axis=1, keepdims=True)
        x0 = np.concatenate([structure.cameras[i].ravel() for i in free] + [points0.ravel()])
        fixed_cameras = np.array(structure.cameras, dtype=float)

        v = observations.view_indices
        p = observations.point_indices
        observed = observations.pixels

        def residuals(x: np.ndarray) -> np.ndarray:
            cameras = fixed_cameras.copy()
            for i, sl in camera_slot.items():
                cameras[i] = x[sl].reshape(3, 4)
            points = x[point_offset:].reshape(-1, 4)
            proj = np.einsum('nij,nj->ni', cameras[v], points[p])
            with np.errstate(divide='ignore', invalid='ignore'):
                predicted = proj[:, :2] / proj[:, 2:3]
            return (predicted - observed).ravel()

        size = x0.size
        sparsity = lil_matrix((2 * len(observations), size), dtype=int)
        rows = np.arange(len(observations))
        for i, sl in camera_slot.items():
            selected = rows[v == i]
            for col in range(sl.start, sl.stop):
                sparsity[2 * selected, col] = 1
                sparsity[2 * selected + 1, col] = 1
        for k in range(4):
            cols = point_offset + 4 * p + k
            sparsity[2 * rows, cols] = 1
            sparsity[2 * rows + 1, cols] = 1

        result, x = self._optimize(residuals, x0, sparsity, len(observations))
        if result.success:
            for i, sl in camera_slot.items():
                P = x[sl].reshape(3, 4)
                structure.cameras[i] = P / np.linalg.norm(P)
            points = x[point_offset:].reshape(-1, 4)
            structure.points = points / np.linalg.norm(points, axis=1, keepdims=True)
        return result
