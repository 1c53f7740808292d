"""
Dense matrix and vector helpers for the filtering engines.

Matrices are 2-D ``numpy`` float arrays, vectors are 1-D arrays. The inverse
is computed with Gauss-Jordan elimination and partial pivoting so that a
singular or near-singular matrix yields a regularized near-identity result
instead of an exception; callers that need an accurate inverse must check
conditioning themselves (see ``is_well_conditioned``).
"""

import logging
from typing import Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

PIVOT_TOLERANCE = 1e-10
REGULARIZATION = 0.001

ArrayLike = Union[np.ndarray, Sequence[float], Sequence[Sequence[float]], float]


def as_matrix(value: ArrayLike) -> np.ndarray:
    """Coerce scalars, vectors and nested sequences to a 2-D float array."""
    arr = np.array(value, dtype=float)
    if arr.ndim == 0:
        return arr.reshape(1, 1)
    if arr.ndim == 1:
        return arr.reshape(1, -1)
    if arr.ndim != 2:
        raise ValueError(f"Expected at most 2 dimensions, got {arr.ndim}")
    return arr


def as_vector(value: ArrayLike) -> np.ndarray:
    """Coerce scalars and sequences to a 1-D float array."""
    return np.atleast_1d(np.array(value, dtype=float)).ravel()


def identity(n: int) -> np.ndarray:
    return np.eye(n)


def transpose(a: np.ndarray) -> np.ndarray:
    return as_matrix(a).T.copy()


def matmul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a, b = as_matrix(a), as_matrix(b)
    if a.shape[1] != b.shape[0]:
        raise ValueError(f"Shape mismatch for multiply: {a.shape} x {b.shape}")
    return a @ b


def matvec(a: np.ndarray, v: np.ndarray) -> np.ndarray:
    a, v = as_matrix(a), as_vector(v)
    if a.shape[1] != v.shape[0]:
        raise ValueError(f"Shape mismatch for matrix-vector product: {a.shape} x {v.shape}")
    return a @ v


def add(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a, b = as_matrix(a), as_matrix(b)
    if a.shape != b.shape:
        raise ValueError(f"Shape mismatch for add: {a.shape} vs {b.shape}")
    return a + b


def subtract(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a, b = as_matrix(a), as_matrix(b)
    if a.shape != b.shape:
        raise ValueError(f"Shape mismatch for subtract: {a.shape} vs {b.shape}")
    return a - b


def scale(a: np.ndarray, factor: float) -> np.ndarray:
    return as_matrix(a) * float(factor)


def trace(a: np.ndarray) -> float:
    return float(np.trace(as_matrix(a)))


def outer(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return np.outer(as_vector(u), as_vector(v))


def vec_add(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return as_vector(u) + as_vector(v)


def vec_subtract(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return as_vector(u) - as_vector(v)


def regularized_identity(n: int) -> np.ndarray:
    """Fallback returned when inversion fails: ``I + 0.001`` element-wise."""
    return np.eye(n) + REGULARIZATION


def inverse(a: np.ndarray) -> np.ndarray:
    """Gauss-Jordan inverse with partial pivoting.

    Never raises on singular input. When the best available pivot in a
    column is smaller than ``PIVOT_TOLERANCE`` the regularized identity is
    returned so that filter loops keep running on degenerate covariance.
    """
    m = as_matrix(a)
    n, cols = m.shape
    if n != cols:
        raise ValueError(f"Cannot invert non-square matrix of shape {m.shape}")

    augmented = np.hstack([m.astype(float), np.eye(n)])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        if abs(augmented[pivot_row, col]) < PIVOT_TOLERANCE:
            logger.debug(
                "Near-singular matrix, returning regularized identity",
                extra={"dimension": n, "column": col}
            )
            return regularized_identity(n)

        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]

        augmented[col] = augmented[col] / augmented[col, col]

        for row in range(n):
            if row != col:
                factor = augmented[row, col]
                if factor != 0.0:
                    augmented[row] = augmented[row] - factor * augmented[col]

    return augmented[:, n:].copy()


def is_well_conditioned(a: np.ndarray, max_condition: float = 1e8) -> bool:
    """True when the matrix condition number is below ``max_condition``."""
    m = as_matrix(a)
    if m.shape[0] != m.shape[1]:
        return False
    cond = np.linalg.cond(m)
    return bool(np.isfinite(cond) and cond < max_condition)


def sample_covariance(samples: Sequence[np.ndarray]) -> np.ndarray:
    """Unbiased (N-1) covariance of a sequence of equally sized vectors."""
    data = np.array([as_vector(s) for s in samples], dtype=float)
    if data.shape[0] < 2:
        return np.zeros((data.shape[1], data.shape[1])) if data.ndim == 2 else np.zeros((1, 1))
    centered = data - data.mean(axis=0)
    return centered.T @ centered / (data.shape[0] - 1)


def symmetrize(a: np.ndarray) -> np.ndarray:
    m = as_matrix(a)
    return (m + m.T) / 2.0
