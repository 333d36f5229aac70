"""
Library for math functions for use elsewhere.
"""
from typing import Callable, Union
import numpy as np


def forward_difference_jacobian(func: Callable,
                                x: np.ndarray,
                                f0: np.ndarray,
                                bounds_lo: np.ndarray,
                                bounds_hi: np.ndarray,
                                min_step: Union[float, np.ndarray]) -> np.ndarray:
    r"""
    Forward-difference approximation of the Jacobian of a vector-valued function, with an absolute minimum step and
    steps that never leave the box defined by the bounds.

    For each parameter :math:`x_j` the step is :math:`h_j=\max(h_{\mathrm{min}}, \sqrt{\epsilon}|x_j|)`. If
    :math:`x_j+h_j` is above the upper bound, the step is taken backwards. If neither direction fits inside the bounds,
    the step is shrunk to the larger of the two distances to the bounds.

    Args:
        func (Callable): Function of a single argument, ``x``, returning a 1D array.
        x (np.ndarray): Point at which the Jacobian is computed.
        f0 (np.ndarray): ``func(x)``.
        bounds_lo (np.ndarray): Lower bounds for ``x``.
        bounds_hi (np.ndarray): Upper bounds for ``x``.
        min_step (float or np.ndarray): The smallest absolute step, either shared by all parameters or one per
            parameter.

    Returns:
        np.ndarray: Array of shape ``(len(f0), len(x))`` with the partial derivatives.
    """
    x = np.asarray(x, dtype=float)
    f0 = np.asarray(f0, dtype=float)
    steps = np.maximum(min_step, np.sqrt(np.finfo(float).eps) * np.abs(x))
    jac = np.zeros((f0.size, x.size), dtype=float)
    for param_id, step in enumerate(steps):
        if x[param_id] + step > bounds_hi[param_id]:
            if x[param_id] - step >= bounds_lo[param_id]:
                step = -step
            else:
                room_up = bounds_hi[param_id] - x[param_id]
                room_down = x[param_id] - bounds_lo[param_id]
                step = room_up if room_up >= room_down else -room_down
        if step == 0.0:
            continue
        x_step = x.copy()
        x_step[param_id] += step
        jac[:, param_id] = (np.asarray(func(x_step), dtype=float) - f0) / step
    return jac


class LastEvaluationCache(object):
    """
    Wraps a function of a single array argument and remembers its most recent evaluation.

    :func:`scipy.optimize.least_squares` always evaluates the residuals at a point before asking for the Jacobian at
    the same point, so the Jacobian can reuse ``f(x)`` instead of paying for it again. This matters for the outer layer
    of the nested fits, where every residual evaluation runs a full set of inner fits.

    Attributes:
        func (Callable): The wrapped function.
        num_evals (int): Number of times the wrapped function was actually evaluated.
    """
    def __init__(self, func: Callable):
        self.func = func
        self.num_evals: int = 0
        self._last_x: np.ndarray = None
        self._last_f: np.ndarray = None

    def __call__(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if self._last_x is None or not np.array_equal(x, self._last_x):
            self._last_f = np.asarray(self.func(x), dtype=float)
            self._last_x = x.copy()
            self.num_evals += 1
        return self._last_f.copy()

    def bounded_jacobian(self,
                         bounds_lo: np.ndarray,
                         bounds_hi: np.ndarray,
                         min_step: Union[float, np.ndarray]) -> Callable:
        """
        Generates a Jacobian callable, to be passed as ``jac`` to :func:`scipy.optimize.least_squares`, that uses
        :func:`forward_difference_jacobian` on the wrapped function.

        Args:
            bounds_lo (np.ndarray): Lower bounds for the parameters.
            bounds_hi (np.ndarray): Upper bounds for the parameters.
            min_step (float or np.ndarray): The smallest absolute finite-difference step, shared or per parameter.

        Returns:
            Callable: ``jac(x)`` returning the Jacobian at ``x``.
        """
        def jacobian(x: np.ndarray) -> np.ndarray:
            return forward_difference_jacobian(func=self, x=x, f0=self(x),
                                               bounds_lo=bounds_lo, bounds_hi=bounds_hi, min_step=min_step)
        return jacobian
