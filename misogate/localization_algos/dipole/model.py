"""
Point magnetic dipole forward model and its finite-difference Jacobian.

    r     = sensor_pos - magnet_pos   (magnet sits at height z0 above the sensor plane)
    r_hat = r / |r|
    B     = (M / |r|^3) * (3 * (m_hat . r_hat) * r_hat - m_hat)
"""

import numpy as np

# Finite-difference steps
JACOBIAN_POS_STEP = 1.0
JACOBIAN_M_REL_STEP = 0.001


def dipole_field(
    magnet_x: float,
    magnet_y: float,
    M: float,
    sensor: np.ndarray,
    z0: float,
    m_hat: np.ndarray
) -> np.ndarray:
    """
    Field predicted at a sensor for a magnet at (magnet_x, magnet_y, z0).

    Args:
        magnet_x: Magnet X position
        magnet_y: Magnet Y position
        M: Dipole moment scale (absorbs mu0/4pi and unit conversions)
        sensor: Sensor position [x, y, z]
        z0: Magnet plane height
        m_hat: Unit dipole orientation

    Returns:
        Field vector [Bx, By, Bz]
    """
    r = np.array([
        sensor[0] - magnet_x,
        sensor[1] - magnet_y,
        sensor[2] - z0
    ], dtype=float)

    r_norm = float(np.linalg.norm(r))
    if r_norm < 1.0:
        r_norm = 1.0

    r_hat = r / r_norm
    m_dot_r = float(np.dot(m_hat, r_hat))
    b_unit = 3.0 * m_dot_r * r_hat - m_hat

    r_cubed = max(r_norm ** 3, 1.0)
    return (M / r_cubed) * b_unit


def dipole_jacobian(
    magnet_x: float,
    magnet_y: float,
    M: float,
    sensor: np.ndarray,
    z0: float,
    m_hat: np.ndarray
) -> np.ndarray:
    """
    Symmetric finite-difference Jacobian of the field w.r.t. (x, y, M).

    Returns:
        3x3 array, J[component, parameter]
    """
    J = np.zeros((3, 3))
    h = JACOBIAN_POS_STEP

    J[:, 0] = (
        dipole_field(magnet_x + h, magnet_y, M, sensor, z0, m_hat)
        - dipole_field(magnet_x - h, magnet_y, M, sensor, z0, m_hat)
    ) / (2.0 * h)

    J[:, 1] = (
        dipole_field(magnet_x, magnet_y + h, M, sensor, z0, m_hat)
        - dipole_field(magnet_x, magnet_y - h, M, sensor, z0, m_hat)
    ) / (2.0 * h)

    h_m = max(JACOBIAN_M_REL_STEP * abs(M), 1.0)
    J[:, 2] = (
        dipole_field(magnet_x, magnet_y, M + h_m, sensor, z0, m_hat)
        - dipole_field(magnet_x, magnet_y, M - h_m, sensor, z0, m_hat)
    ) / (2.0 * h_m)

    return J


def unit_dipole_fields(
    magnet_xs: np.ndarray,
    magnet_ys: np.ndarray,
    sensor: np.ndarray,
    z0: float,
    m_hat: np.ndarray
) -> np.ndarray:
    """
    Field at one sensor for many candidate magnet positions with M = 1.
    Same clamping as dipole_field, so dipole_field == M * row.

    Returns:
        (N, 3) array, one field vector per candidate
    """
    xs = np.asarray(magnet_xs, dtype=float)
    ys = np.asarray(magnet_ys, dtype=float)
    r = np.stack([
        sensor[0] - xs,
        sensor[1] - ys,
        np.full_like(xs, sensor[2] - z0)
    ], axis=1)

    r_norm = np.maximum(np.linalg.norm(r, axis=1), 1.0)
    r_hat = r / r_norm[:, None]
    m_dot_r = r_hat @ m_hat
    b_unit = 3.0 * m_dot_r[:, None] * r_hat - m_hat

    r_cubed = np.maximum(r_norm ** 3, 1.0)
    return b_unit / r_cubed[:, None]
