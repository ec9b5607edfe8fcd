#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Exceptions raised while growing a reconstruction.

Only InsufficientSeedCandidates is fatal for a whole run. Every other error
describes why a single initialization or expansion attempt failed; the
expansion driver catches those, discards the view and moves on.
"""


class ReconstructionError(Exception):
    """Base class for reconstruction failures."""


class InsufficientSeedCandidates(ReconstructionError):
    """No view meets the minimum neighbor / 3D score requirements."""


class InsufficientCommonFeatures(ReconstructionError):
    """Too few features are observed in common by the chosen views."""


class GeometricEstimationFailed(ReconstructionError):
    """A robust estimator could not find a model with enough inliers."""


class CalibrationUpgradeFailed(ReconstructionError):
    """The projective to metric upgrade produced a degenerate result."""


class RefinementDivergence(ReconstructionError):
    """Bundle adjustment did not converge or made the solution worse."""


class PhysicalConstraintViolation(ReconstructionError):
    """Triangulated features are behind a camera or outside the image."""
