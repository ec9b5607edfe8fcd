#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Rotation and rigid/similarity transform helpers.

Shared by the bundle adjustment parameterisation, the synthetic scene
generator and pose evaluation.
"""

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """Cross product matrix [v]x such that [v]x @ u = v x u."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0]
    ])


def create_rotation_matrix_x(angle_deg: float) -> np.ndarray:
    """Create 3x3 rotation matrix around X axis.

    Args:
        angle_deg: Angle in degrees

    Returns:
        3x3 rotation matrix
    """
    angle_rad = np.radians(angle_deg)
    cos_a = np.cos(angle_rad)
    sin_a = np.sin(angle_rad)

    return np.array([
        [1.0, 0.0, 0.0],
        [0.0, cos_a, -sin_a],
        [0.0, sin_a, cos_a]
    ])


def create_rotation_matrix_y(angle_deg: float) -> np.ndarray:
    """Create 3x3 rotation matrix around Y axis."""
    angle_rad = np.radians(angle_deg)
    cos_a = np.cos(angle_rad)
    sin_a = np.sin(angle_rad)

    return np.array([
        [cos_a, 0.0, sin_a],
        [0.0, 1.0, 0.0],
        [-sin_a, 0.0, cos_a]
    ])


def create_rotation_matrix_z(angle_deg: float) -> np.ndarray:
    """Create 3x3 rotation matrix around Z axis."""
    angle_rad = np.radians(angle_deg)
    cos_a = np.cos(angle_rad)
    sin_a = np.sin(angle_rad)

    return np.array([
        [cos_a, -sin_a, 0.0],
        [sin_a, cos_a, 0.0],
        [0.0, 0.0, 1.0]
    ])


def create_rotation_matrix(angles_deg: np.ndarray) -> np.ndarray:
    """Create 3x3 rotation matrix from Euler angles (XYZ order).

    Args:
        angles_deg: Array of 3 angles in degrees [X, Y, Z]

    Returns:
        3x3 rotation matrix
    """
    Rx = create_rotation_matrix_x(angles_deg[0])
    Ry = create_rotation_matrix_y(angles_deg[1])
    Rz = create_rotation_matrix_z(angles_deg[2])

    return Rz @ Ry @ Rx


def look_at_rotation(center: np.ndarray, target: np.ndarray,
                     down: Optional[np.ndarray] = None) -> np.ndarray:
    """World to camera rotation for a camera at `center` looking at `target`.

    Camera axes follow the computer vision convention: +z forward, +x right,
    +y down in the image. `down` is the world direction that should appear
    as image down, -Y by default.
    """
    if down is None:
        down = np.array([0.0, -1.0, 0.0])
    forward = np.asarray(target, dtype=float) - np.asarray(center, dtype=float)
    forward /= np.linalg.norm(forward)
    right = np.cross(down, forward)
    norm = np.linalg.norm(right)
    if norm < 1e-12:
        raise ValueError("Up vector is parallel to the viewing direction")
    right /= norm
    image_down = np.cross(forward, right)
    return np.vstack([right, image_down, forward])


def rodrigues_to_rotation_matrix(rvec: np.ndarray) -> np.ndarray:
    """Convert Rodrigues rotation vector to 3x3 rotation matrix.

    Args:
        rvec: 3-element Rodrigues rotation vector

    Returns:
        3x3 rotation matrix
    """
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return R


def rotation_matrix_to_rodrigues(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to Rodrigues rotation vector.

    Args:
        R: 3x3 rotation matrix

    Returns:
        3-element Rodrigues rotation vector
    """
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return rvec.flatten()


def rotate_by_rodrigues(rvecs: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Rotate each point by its own rotation vector.

    Vectorised Rodrigues formula, used inside least squares residuals where
    calling cv2 once per observation would dominate the run time.

    Args:
        rvecs: Nx3 rotation vectors
        points: Nx3 points

    Returns:
        Nx3 rotated points
    """
    theta = np.linalg.norm(rvecs, axis=1)[:, np.newaxis]
    with np.errstate(invalid='ignore', divide='ignore'):
        axis = rvecs / theta
    axis = np.nan_to_num(axis)
    dot = np.sum(points * axis, axis=1)[:, np.newaxis]
    cos_theta = np.cos(theta)
    sin_theta = np.sin(theta)
    return (cos_theta * points + sin_theta * np.cross(axis, points) +
            dot * (1 - cos_theta) * axis)


def rotation_angle_deg(R: np.ndarray) -> float:
    """Angle of a rotation matrix in degrees."""
    cos_angle = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)))


def similarity_transform_3d(A: np.ndarray, B: np.ndarray,
                            with_scale: bool = True) -> Tuple[float, np.ndarray, np.ndarray]:
    """Find s, R, t minimizing |B - (s R A + t)| (Umeyama).

    Args:
        A: Nx3 array of source points
        B: Nx3 array of target points
        with_scale: Estimate the scale, otherwise s is fixed to 1

    Returns:
        Tuple of (scale, 3x3 rotation matrix, 3-element translation vector)
    """
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    if A.shape != B.shape or A.shape[0] < 3:
        raise ValueError(f"Need matching Nx3 point sets with N >= 3, got {A.shape} and {B.shape}")

    centroid_A = np.mean(A, axis=0)
    centroid_B = np.mean(B, axis=0)
    AA = A - centroid_A
    BB = B - centroid_B

    H = AA.T @ BB / len(A)
    U, S, Vt = np.linalg.svd(H)
    D = np.eye(3)
    # Handle special reflection case
    if np.linalg.det(Vt.T @ U.T) < 0:
        D[2, 2] = -1.0
    R = Vt.T @ D @ U.T

    if with_scale:
        var_A = np.sum(AA * AA) / len(A)
        if var_A < 1e-20:
            raise ValueError("Source points are degenerate")
        s = float(np.trace(np.diag(S) @ D) / var_A)
    else:
        s = 1.0

    t = centroid_B - s * R @ centroid_A
    return s, R, t
