"""Gaussian sampling primitive and log-density for operator covariances."""

import logging
log = logging.getLogger(__name__)

import numpy as np

from flatlens.core.operator import LinearOp
from flatlens.utils import fdot


def simulate_gaussian(rng: np.random.Generator, cov: LinearOp, mean=None, template=None, nbatch=None):
    """Draws mean + cov^(1/2) w, with w white noise in map space.

    Args:
        rng: numpy random generator
        cov: covariance operator supporting sqrtm
        mean: optional mean field (broadcast against the draw)
        template: field array fixing shape and dtype of one draw, (ncomp, Ny, Nx); defaults to mean
        nbatch: number of stacked independent draws; None or 1 gives an unbatched draw

    """
    if template is None:
        assert mean is not None, 'need a template or a mean field to fix the shape of the draw'
        template = mean
    template = np.asarray(template)
    shape = template.shape[-3:]
    if nbatch is not None and nbatch > 1:
        shape = (nbatch,) + shape
    white = rng.standard_normal(size=shape).astype(template.dtype)
    ret = cov.sqrtm().apply(white)
    if mean is not None:
        ret = ret + mean
    return np.asarray(ret).astype(template.dtype, copy=False)


def gaussian_logpdf(x, mean, cov: LinearOp):
    """log N(x; mean, cov) up to the constant -n log(2 pi) / 2.

    Uses the pseudo-inverse and pseudo-log-determinant of cov. Batched x gives one
    value per batch element.
    """
    r = np.asarray(x) if mean is None else np.asarray(x) - mean
    return -0.5 * fdot(r, cov.pinv().apply(r)) - 0.5 * cov.logdet()
