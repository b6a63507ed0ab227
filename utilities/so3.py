import numpy as np

# below this angle the closed forms lose precision, use Taylor expansions
SMALL_ANGLE = 1e-5


def skew(v: np.ndarray) -> np.ndarray:
    """Get the cross product matrix [v×] for a 3D vector v."""
    v = np.asarray(v, float).reshape(3)
    return np.array([[0, -v[2], v[1]],
                     [v[2], 0, -v[0]],
                     [-v[1], v[0], 0]])


def right_jacobian_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3) for exponential map.
    Jr(ω) such that: Exp(ω + δω) ≈ Exp(ω) * Exp(Jr(ω) * δω)

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr: 3×3 right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    W = skew(omega)

    if theta < SMALL_ANGLE:
        # Jr ≈ I - 0.5*[ω]× + 1/6*[ω]×²
        return np.eye(3) - 0.5 * W + (W @ W) / 6.0

    s = np.sin(theta)
    c = np.cos(theta)

    # Jr(ω) = I - (1-cos(θ))/θ² [ω]× + (θ-sin(θ))/θ³ [ω]×²
    return (np.eye(3)
            - ((1 - c) / theta**2) * W
            + ((theta - s) / theta**3) * W @ W)


def right_jacobian_inv_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Inverse of right Jacobian of SO(3).

    Singular at |ω| = 2π; rotation vectors coming out of Logmap have
    |ω| ≤ π so this is never hit in practice. Callers inside the optimizer
    check the result for finiteness instead of catching exceptions.

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr_inv: 3×3 inverse right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    W = skew(omega)

    if theta < SMALL_ANGLE:
        # Jr^{-1} ≈ I + 0.5*[ω]× + 1/12*[ω]×²
        return np.eye(3) + 0.5 * W + (W @ W) / 12.0

    # cot(θ/2) form stays finite at θ = π where sin(θ) = 0
    cot_half = np.cos(0.5 * theta) / np.sin(0.5 * theta)

    # Jr^{-1}(ω) = I + 0.5*[ω]× + (1/θ² - cot(θ/2)/(2θ)) [ω]×²
    return (np.eye(3)
            + 0.5 * W
            + (1.0 / theta**2 - cot_half / (2.0 * theta)) * W @ W)
