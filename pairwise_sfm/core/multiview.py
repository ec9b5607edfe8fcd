#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Linear multi-view geometry.

Projective cameras are 3x4 matrices acting on homogeneous points. Unless
noted otherwise a set of cameras is expressed in the frame where the first
camera is [I|0]. All linear solvers condition pixel coordinates with
Hartley normalization before building their design matrix.
"""

import logging
from typing import Sequence, Tuple

import numpy as np

from pairwise_sfm.core.camera import (CameraExtrinsics, decompose_projection_matrix,
                                      relative_pose_from_essential)
from pairwise_sfm.core.errors import CalibrationUpgradeFailed
from pairwise_sfm.utils.transforms import skew_symmetric

logger = logging.getLogger(__name__)


def normalize_pixels(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Hartley normalization: zero mean and mean distance sqrt(2).

    Args:
        points: Nx2 pixel coordinates

    Returns:
        Tuple of (Nx2 normalized points, 3x3 transform T with x_n = T x)
    """
    points = np.asarray(points, dtype=float)
    mean = np.mean(points, axis=0)
    centered = points - mean
    distance = np.mean(np.linalg.norm(centered, axis=1))
    # Handle degenerate case
    scale = np.sqrt(2.0) / distance if distance > 1e-12 else 1.0
    T = np.array([
        [scale, 0.0, -scale * mean[0]],
        [0.0, scale, -scale * mean[1]],
        [0.0, 0.0, 1.0]
    ])
    return centered * scale, T


def to_homogeneous(points: np.ndarray) -> np.ndarray:
    return np.hstack([points, np.ones((len(points), 1))])


def normalize_camera(P: np.ndarray) -> np.ndarray:
    """Scale a camera matrix to unit Frobenius norm."""
    norm = np.linalg.norm(P)
    if not np.isfinite(norm) or norm < 1e-300:
        raise ValueError("Camera matrix is zero or not finite")
    return P / norm


def canonical_camera() -> np.ndarray:
    return np.hstack([np.eye(3), np.zeros((3, 1))])


def fundamental_from_projective(P2: np.ndarray) -> np.ndarray:
    """F21 for the camera pair ([I|0], P2 = [A|a]): F = [a]x A."""
    return skew_symmetric(P2[:, 3]) @ P2[:, :3]


def fundamental_from_cameras(P1: np.ndarray, P2: np.ndarray) -> np.ndarray:
    """Fundamental matrix with x2^T F x1 = 0 for two general cameras."""
    _, _, Vt = np.linalg.svd(P1)
    center = Vt[-1]
    epipole = P2 @ center
    return skew_symmetric(epipole) @ P2 @ np.linalg.pinv(P1)


def cameras_from_fundamental(F: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Canonical camera pair [I|0], [[e']x F | e'] for a fundamental matrix."""
    U, _, _ = np.linalg.svd(F)
    epipole = U[:, 2]
    P2 = np.hstack([skew_symmetric(epipole) @ F, epipole.reshape(3, 1)])
    return canonical_camera(), P2


def sampson_errors(F: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """First order geometric error of x2^T F x1 = 0 in pixels."""
    h1 = to_homogeneous(x1)
    h2 = to_homogeneous(x2)
    Fx1 = h1 @ F.T
    Ftx2 = h2 @ F
    numerator = np.sum(h2 * Fx1, axis=1)
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.abs(numerator) / np.sqrt(denominator)


def triangulate_dlt(cameras: Sequence[np.ndarray], points: Sequence[np.ndarray]) -> np.ndarray:
    """Triangulate points seen by every camera with the linear DLT.

    Args:
        cameras: V camera matrices, 3x4
        points: V arrays of Nx2 observations

    Returns:
        Nx4 homogeneous points with unit norm
    """
    n = len(points[0])
    A = np.empty((n, 2 * len(cameras), 4))
    for v, (P, x) in enumerate(zip(cameras, points)):
        x_n, T = normalize_pixels(x)
        P_n = T @ P
        A[:, 2 * v] = x_n[:, 0:1] * P_n[2] - P_n[0]
        A[:, 2 * v + 1] = x_n[:, 1:2] * P_n[2] - P_n[1]

    norms = np.linalg.norm(A, axis=2, keepdims=True)
    A = A / np.where(norms > 0, norms, 1.0)
    _, _, Vt = np.linalg.svd(A)
    return Vt[:, -1, :]


def triangulate_metric(poses: Sequence[CameraExtrinsics], normalized: Sequence[np.ndarray]) -> np.ndarray:
    """Triangulate from world_to_view poses and normalized image coordinates.

    Returns:
        Nx3 points, rows are nan where the point is at infinity
    """
    cameras = [pose.matrix[:3, :] for pose in poses]
    X = triangulate_dlt(cameras, normalized)
    with np.errstate(divide='ignore', invalid='ignore'):
        points = X[:, :3] / X[:, 3:4]
    points[np.abs(X[:, 3]) < 1e-12] = np.nan
    return points


def project(P: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Project Nx4 homogeneous points, returns Nx2 pixels."""
    proj = X @ P.T
    with np.errstate(divide='ignore', invalid='ignore'):
        return proj[:, :2] / proj[:, 2:3]


def reprojection_errors(cameras: Sequence[np.ndarray], X: np.ndarray,
                        points: Sequence[np.ndarray]) -> np.ndarray:
    """Pixel distance between observations and projections, shape VxN."""
    return np.vstack([np.linalg.norm(project(P, X) - x, axis=1) for P, x in zip(cameras, points)])


def resect_dlt(X: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Estimate a camera matrix from 3D-2D correspondences.

    Args:
        X: Nx4 homogeneous points, N >= 6
        x: Nx2 pixel observations

    Returns:
        3x4 camera matrix with unit Frobenius norm
    """
    if len(X) < 6:
        raise ValueError(f"Resection needs at least 6 points, got {len(X)}")

    x_n, T = normalize_pixels(x)
    X = X / np.linalg.norm(X, axis=1, keepdims=True)

    n = len(X)
    A = np.zeros((2 * n, 12))
    A[0::2, 0:4] = X
    A[0::2, 8:12] = -x_n[:, 0:1] * X
    A[1::2, 4:8] = X
    A[1::2, 8:12] = -x_n[:, 1:2] * X

    _, _, Vt = np.linalg.svd(A)
    P_n = Vt[-1].reshape(3, 4)
    return normalize_camera(np.linalg.solve(T, P_n))


def _skew_batch(v: np.ndarray) -> np.ndarray:
    out = np.zeros((len(v), 3, 3))
    out[:, 0, 1] = -v[:, 2]
    out[:, 0, 2] = v[:, 1]
    out[:, 1, 0] = v[:, 2]
    out[:, 1, 2] = -v[:, 0]
    out[:, 2, 0] = -v[:, 1]
    out[:, 2, 1] = v[:, 0]
    return out


def trifocal_linear(x1: np.ndarray, x2: np.ndarray, x3: np.ndarray) -> np.ndarray:
    """Linear estimate of the trifocal tensor T[i, j, k] from point triples.

    Uses the point-point-point incidence [x']x (sum_i x^i T_i) [x'']x = 0,
    four independent equations per triple. Inputs should already be
    normalized.

    Args:
        x1, x2, x3: Nx2 coordinates in the three views, N >= 7

    Returns:
        3x3x3 tensor with unit norm
    """
    n = len(x1)
    if n < 7:
        raise ValueError(f"Trifocal estimation needs at least 7 points, got {n}")
    h1 = to_homogeneous(x1)
    cross2 = _skew_batch(to_homogeneous(x2))
    cross3 = _skew_batch(to_homogeneous(x3))

    coefficients = np.einsum('ni,nsj,nkt->nstijk', h1, cross2, cross3)[:, :2, :2]
    A = coefficients.reshape(n * 4, 27)
    _, _, Vt = np.linalg.svd(A)
    return Vt[-1].reshape(3, 3, 3)


def cameras_from_trifocal(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Camera matrices P2, P3 consistent with P1 = [I|0] and the tensor.

    Epipoles are the common perpendiculars of the left and right null
    vectors of the three slices T_i.
    """
    left = []
    right = []
    for i in range(3):
        U, _, Vt = np.linalg.svd(T[i])
        left.append(U[:, 2])
        right.append(Vt[2])

    e2 = np.linalg.svd(np.column_stack(left))[0][:, 2]
    e3 = np.linalg.svd(np.column_stack(right))[0][:, 2]

    P2 = np.column_stack([T[0] @ e3, T[1] @ e3, T[2] @ e3, e2])
    M = np.outer(e3, e3) - np.eye(3)
    P3 = np.column_stack([M @ T[0].T @ e2, M @ T[1].T @ e2, M @ T[2].T @ e2, e3])
    return P2, P3


def estimate_three_view_cameras(x1: np.ndarray, x2: np.ndarray,
                                x3: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Projective cameras of views 2 and 3 from pixel triples, view 1 is [I|0].

    Args:
        x1, x2, x3: Nx2 pixel coordinates

    Returns:
        Tuple of (P2, P3) in pixel coordinates, unit Frobenius norm
    """
    n1, T1 = normalize_pixels(x1)
    n2, T2 = normalize_pixels(x2)
    n3, T3 = normalize_pixels(x3)

    tensor = trifocal_linear(n1, n2, n3)
    P2_n, P3_n = cameras_from_trifocal(tensor)

    # Undo the normalization while keeping the first camera at [I|0]
    Q = np.eye(4)
    Q[:3, :3] = T1
    P2 = np.linalg.solve(T2, P2_n) @ Q
    P3 = np.linalg.solve(T3, P3_n) @ Q
    return normalize_camera(P2), normalize_camera(P3)


def three_view_errors(cameras: Sequence[np.ndarray], points: Sequence[np.ndarray]) -> np.ndarray:
    """Worst reprojection error over the views after triangulating each track."""
    X = triangulate_dlt(cameras, points)
    return np.max(reprojection_errors(cameras, X, points), axis=0)


def checked_scale(numerator: float, denominator: float, what: str = "scale") -> float:
    """Ratio that is guaranteed to be finite and non-zero.

    Raises:
        CalibrationUpgradeFailed: when the ratio is degenerate
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = np.float64(numerator) / np.float64(denominator)
    if not np.isfinite(ratio) or ratio == 0.0:
        raise CalibrationUpgradeFailed(f"Degenerate {what}: {numerator} / {denominator}")
    return float(ratio)


def calibrating_homography(P2: np.ndarray, K1: np.ndarray, K2: np.ndarray,
                           x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Homography H upgrading the pair ([I|0], P2) to a metric frame.

    After the upgrade [I|0] H = [K1|0] and P2 H ~ K2 [R|t] where (R, t) is
    the view1_to_view2 motion implied by the known calibration, with |t| = 1.

    Args:
        P2: Projective camera of the second view
        K1: Calibration matrix of the first view
        K2: Calibration matrix of the second view
        x1: Nx2 pixels in the first view, used to resolve cheirality
        x2: Nx2 pixels in the second view

    Returns:
        4x4 calibrating homography

    Raises:
        CalibrationUpgradeFailed: when the geometry is degenerate
    """
    F21 = fundamental_from_projective(P2)
    E = K2.T @ F21 @ K1
    if not np.all(np.isfinite(E)) or np.linalg.norm(E) < 1e-300:
        raise CalibrationUpgradeFailed("Essential matrix is degenerate")

    try:
        R, t = relative_pose_from_essential(E, x1, x2, K1, K2)
    except ValueError as e:
        raise CalibrationUpgradeFailed(str(e)) from e

    A = P2[:, :3]
    a = P2[:, 3]
    AK = A @ K1
    KR = K2 @ R

    # A K1 + a w^T = lambda K2 R, solved for (w, lambda)
    M = np.zeros((9, 4))
    for r in range(3):
        for c in range(3):
            M[3 * r + c, c] = a[r]
            M[3 * r + c, 3] = -KR[r, c]
    solution = np.linalg.lstsq(M, -AK.ravel(), rcond=None)[0]
    w = solution[:3]
    lam = solution[3]

    scale = checked_scale(lam * (a @ (K2 @ t)), a @ a, "calibrating homography scale")

    H = np.zeros((4, 4))
    H[:3, :3] = K1
    H[3, :3] = w
    H[3, 3] = scale

    if not np.all(np.isfinite(H)) or abs(np.linalg.det(H)) < 1e-300:
        raise CalibrationUpgradeFailed("Calibrating homography is singular")
    return H


def projective_to_metric(P: np.ndarray, H: np.ndarray) -> Tuple[np.ndarray, CameraExtrinsics]:
    """Upgrade a projective camera to calibration and pose.

    Returns:
        Tuple of (3x3 K, view1_to_view pose)

    Raises:
        CalibrationUpgradeFailed: when P H is not a valid metric camera
    """
    try:
        K, R, t = decompose_projection_matrix(P @ H)
    except (ValueError, np.linalg.LinAlgError) as e:
        raise CalibrationUpgradeFailed(f"Projective to metric failed: {e}") from e
    if not (np.all(np.isfinite(K)) and np.all(np.isfinite(t))):
        raise CalibrationUpgradeFailed("Projective to metric produced non-finite values")
    return K, CameraExtrinsics(R, t)
