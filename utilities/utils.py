import numpy as np
import yaml


def load_yaml(path: str) -> dict:
    """Load a YAML file and return its contents as a dictionary"""
    with open(path, 'r') as file:
        data = yaml.safe_load(file)
    return data


def as_vector3(v, name: str = "vector") -> np.ndarray:
    """Coerce v to a float (3,) array, raising ValueError on a shape mismatch."""
    arr = np.asarray(v, dtype=float)
    if arr.size != 3:
        raise ValueError(f"{name} must have 3 elements, got shape {arr.shape}")
    return arr.reshape(3)


def as_matrix(M, shape: tuple, name: str = "matrix") -> np.ndarray:
    """Coerce M to a float array of the given shape."""
    arr = np.asarray(M, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


def require_finite(name: str, *arrays) -> None:
    """Raise ValueError if any of the arrays holds NaN or inf."""
    for arr in arrays:
        if not np.isfinite(arr).all():
            raise ValueError(f"Non-finite {name}: {arr}")


def equal_with_abs_tol(a, b, tol: float = 1e-9) -> bool:
    """Element-wise comparison with an absolute tolerance (shapes must agree)."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        return False
    return bool(np.all(np.abs(a - b) <= tol))
