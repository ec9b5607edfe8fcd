#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Camera models used by the metric reconstruction.

Intrinsics follow a simplified pinhole model with two radial distortion
terms applied to normalized image coordinates. Poses are rigid transforms
named "a_to_b", mapping a point in frame a into frame b: X_b = R X_a + t.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple, Optional

import cv2
import numpy as np
import scipy.linalg

logger = logging.getLogger(__name__)


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters."""
    width: int
    height: int
    fx: float  # Focal length x
    fy: float  # Focal length y
    cx: float  # Principal point x
    cy: float  # Principal point y
    k1: float = 0.0  # Radial distortion 1
    k2: float = 0.0  # Radial distortion 2

    @property
    def K(self) -> np.ndarray:
        """Get intrinsic matrix."""
        return np.array([
            [self.fx, 0, self.cx],
            [0, self.fy, self.cy],
            [0, 0, 1]
        ], dtype=float)

    @property
    def focal(self) -> float:
        """Mean focal length in pixels."""
        return 0.5 * (self.fx + self.fy)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            "width": self.width,
            "height": self.height,
            "fx": self.fx,
            "fy": self.fy,
            "cx": self.cx,
            "cy": self.cy,
            "k1": self.k1,
            "k2": self.k2,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'CameraIntrinsics':
        """Create from dictionary."""
        return cls(
            width=int(data["width"]),
            height=int(data["height"]),
            fx=float(data["fx"]),
            fy=float(data["fy"]),
            cx=float(data["cx"]),
            cy=float(data["cy"]),
            k1=float(data.get("k1", 0.0)),
            k2=float(data.get("k2", 0.0)),
        )

    @classmethod
    def from_calibration_matrix(cls, K: np.ndarray, width: int, height: int,
                                centered: bool = True) -> 'CameraIntrinsics':
        """Create simplified intrinsics from a 3x3 calibration matrix.

        Skew is discarded and both focal lengths are set to their mean, which
        is what the simplified pinhole model can represent.

        Args:
            K: 3x3 upper triangular calibration matrix
            width: Image width
            height: Image height
            centered: Place the principal point at the image center instead of
                using the one found in K

        Returns:
            Camera intrinsics
        """
        K = np.asarray(K, dtype=float)
        if abs(K[2, 2]) < 1e-12:
            raise ValueError("Calibration matrix has zero scale")
        K = K / K[2, 2]
        f = 0.5 * (abs(K[0, 0]) + abs(K[1, 1]))
        if centered:
            cx, cy = width / 2.0, height / 2.0
        else:
            cx, cy = float(K[0, 2]), float(K[1, 2])
        return cls(width=width, height=height, fx=f, fy=f, cx=cx, cy=cy)

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """Project points expressed in the camera frame into pixels.

        Args:
            points_cam: Nx3 points in camera coordinates

        Returns:
            Nx2 pixel coordinates. Points on the z=0 plane produce inf/nan.
        """
        points_cam = np.atleast_2d(points_cam)
        with np.errstate(divide='ignore', invalid='ignore'):
            xn = points_cam[:, 0] / points_cam[:, 2]
            yn = points_cam[:, 1] / points_cam[:, 2]
        r2 = xn * xn + yn * yn
        d = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
        return np.column_stack([self.fx * d * xn + self.cx,
                                self.fy * d * yn + self.cy])

    def normalize(self, pixels: np.ndarray, iterations: int = 20) -> np.ndarray:
        """Convert pixels into undistorted normalized image coordinates.

        Args:
            pixels: Nx2 pixel coordinates
            iterations: Fixed point iterations used to invert the distortion

        Returns:
            Nx2 normalized coordinates
        """
        pixels = np.atleast_2d(np.asarray(pixels, dtype=float))
        xd = (pixels[:, 0] - self.cx) / self.fx
        yd = (pixels[:, 1] - self.cy) / self.fy
        if self.k1 == 0.0 and self.k2 == 0.0:
            return np.column_stack([xd, yd])

        xn, yn = xd.copy(), yd.copy()
        for _ in range(iterations):
            r2 = xn * xn + yn * yn
            d = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
            xn = xd / d
            yn = yd / d
        return np.column_stack([xn, yn])

    def contains(self, pixels: np.ndarray) -> np.ndarray:
        """Boolean mask of pixels that fall inside the image."""
        pixels = np.atleast_2d(pixels)
        return ((pixels[:, 0] >= 0) & (pixels[:, 0] <= self.width) &
                (pixels[:, 1] >= 0) & (pixels[:, 1] <= self.height))


@dataclass
class CameraExtrinsics:
    """Rigid transform, usually world_to_view (pose)."""
    R: np.ndarray  # 3x3 rotation matrix
    t: np.ndarray  # 3 element translation vector

    def __post_init__(self):
        self.R = np.asarray(self.R, dtype=float).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=float).reshape(3)

    @classmethod
    def identity(cls) -> 'CameraExtrinsics':
        return cls(np.eye(3), np.zeros(3))

    @property
    def matrix(self) -> np.ndarray:
        """Get 4x4 transformation matrix."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.R
        matrix[:3, 3] = self.t
        return matrix

    @property
    def inverse(self) -> 'CameraExtrinsics':
        """Get inverse transformation."""
        R_inv = self.R.T
        t_inv = -R_inv @ self.t
        return CameraExtrinsics(R_inv, t_inv)

    @property
    def center(self) -> np.ndarray:
        """Origin of this frame expressed in the source frame."""
        return -self.R.T @ self.t

    def concat(self, other: 'CameraExtrinsics') -> 'CameraExtrinsics':
        """Apply this transform first and then `other`.

        With self = a_to_b and other = b_to_c the result is a_to_c.
        """
        return CameraExtrinsics(other.R @ self.R, other.R @ self.t + other.t)

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Transform Nx3 points."""
        return np.atleast_2d(points) @ self.R.T + self.t

    def copy(self) -> 'CameraExtrinsics':
        return CameraExtrinsics(self.R.copy(), self.t.copy())

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            "R": self.R.tolist(),
            "t": self.t.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'CameraExtrinsics':
        """Create from dictionary."""
        R = np.array(data.get("R", np.eye(3).tolist()))
        t = np.array(data.get("t", np.zeros(3).tolist()))
        return cls(R, t)


class Camera:
    """Camera model combining intrinsics and a world_to_view pose."""

    def __init__(self,
                 intrinsics: CameraIntrinsics,
                 extrinsics: Optional[CameraExtrinsics] = None,
                 name: str = ""):
        self.intrinsics = intrinsics
        self.extrinsics = extrinsics if extrinsics is not None else CameraExtrinsics.identity()
        self.name = name

    @property
    def projection_matrix(self) -> np.ndarray:
        """3x4 matrix K [R|t]."""
        return self.intrinsics.K @ self.extrinsics.matrix[:3, :]

    def project(self, points_3d: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Project world points into the image.

        Args:
            points_3d: Nx3 points in world coordinates

        Returns:
            Tuple of (Nx2 pixel coordinates, boolean mask of points in front)
        """
        points_cam = self.extrinsics.transform(points_3d)
        in_front = points_cam[:, 2] > 0
        return self.intrinsics.project(points_cam), in_front


def estimate_camera_intrinsics(focal_length_px: Optional[float] = None,
                               image_size: Optional[Tuple[int, int]] = None,
                               focal_scale: float = 1.2) -> CameraIntrinsics:
    """Estimate camera intrinsics from focal length or image size.

    Args:
        focal_length_px: Focal length in pixels
        image_size: (width, height) of the image
        focal_scale: Multiple of the largest image side used when the focal
            length is unknown

    Returns:
        Camera intrinsics
    """
    if image_size is None:
        raise ValueError("Image size is required")

    width, height = image_size

    if focal_length_px is None:
        # Common heuristic when nothing is known about the lens
        focal_length_px = max(width, height) * focal_scale

    return CameraIntrinsics(
        width=int(width),
        height=int(height),
        fx=float(focal_length_px),
        fy=float(focal_length_px),
        cx=width / 2.0,
        cy=height / 2.0,
    )


def essential_pose_candidates(E: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Four (R, t) decompositions of an essential matrix, t with unit norm."""
    U, _, Vt = np.linalg.svd(E)
    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt

    W = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2]

    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def relative_pose_from_essential(E: np.ndarray,
                                 points_2d_1: np.ndarray,
                                 points_2d_2: np.ndarray,
                                 K1: np.ndarray,
                                 K2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Extract relative pose from essential matrix with cheirality check.

    Args:
        E: Essential matrix, x2^T E x1 = 0 in normalized coordinates
        points_2d_1: Nx2 pixels in first view
        points_2d_2: Nx2 pixels in second view
        K1: Intrinsic matrix of first camera
        K2: Intrinsic matrix of second camera

    Returns:
        Tuple of (R, t) for view1_to_view2, t has unit norm
    """
    norm_1 = cv2.undistortPoints(np.asarray(points_2d_1, dtype=np.float64).reshape(-1, 1, 2),
                                 np.asarray(K1, dtype=np.float64), None).reshape(-1, 2)
    norm_2 = cv2.undistortPoints(np.asarray(points_2d_2, dtype=np.float64).reshape(-1, 1, 2),
                                 np.asarray(K2, dtype=np.float64), None).reshape(-1, 2)

    P1 = np.hstack((np.eye(3), np.zeros((3, 1))))

    # Points must be in front of both cameras
    max_positive = 0
    best_solution = None

    for R, t in essential_pose_candidates(E):
        P2 = np.hstack((R, t.reshape(3, 1)))
        points_4d = cv2.triangulatePoints(P1, P2, norm_1.T, norm_2.T)
        with np.errstate(divide='ignore', invalid='ignore'):
            points_3d = (points_4d[:3] / points_4d[3]).T
        points_cam2 = points_3d @ R.T + t

        positive_count = int(np.sum((points_3d[:, 2] > 0) & (points_cam2[:, 2] > 0)))
        if positive_count > max_positive:
            max_positive = positive_count
            best_solution = (R, t)

    if best_solution is None:
        raise ValueError("Could not find a valid solution")

    logger.debug(f"Essential decomposition: {max_positive}/{len(norm_1)} points in front")
    return best_solution


def decompose_projection_matrix(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Decompose a metric camera matrix P ~ K [R|t].

    Args:
        P: 3x4 camera matrix, any scale and sign

    Returns:
        Tuple of (K with K[2,2] = 1 and positive diagonal, proper rotation R, t)
    """
    P = np.asarray(P, dtype=float)
    M = P[:, :3]
    if abs(np.linalg.det(M)) < 1e-300 or not np.all(np.isfinite(P)):
        raise ValueError("Projection matrix is singular")

    K, R = scipy.linalg.rq(M)

    # Force a positive diagonal on K, D is its own inverse
    signs = np.sign(np.diag(K))
    signs[signs == 0] = 1.0
    D = np.diag(signs)
    K = K @ D
    R = D @ R
    p4 = P[:, 3]

    # K R is only defined up to sign
    if np.linalg.det(R) < 0:
        R = -R
        p4 = -p4

    t = np.linalg.solve(K, p4)
    K = K / K[2, 2]
    return K, R, t
