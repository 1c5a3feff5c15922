"""Cheap approximations to the Hessian of the log-density, and a Wiener-filter solver using them."""

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import numpy as np

from flatlens.config.etc.errorhandler import PreconditionerNotDefinedError
from flatlens.core.cg import cd_solve
from flatlens.core.dataset import BaseDataSet, DataSet, Mixed
from flatlens.core.operator import FourierOp, IdentityOp, pinv, diag
from flatlens.core.param_operator import evaluate


def _target_key(target):
    if isinstance(target, str):
        return (target,)
    return tuple(target)


def _hessian_f(Cf, Cn_hat, M_hat, B_hat):
    return pinv(Cf) + B_hat.T @ M_hat.T @ pinv(Cn_hat) @ M_hat @ B_hat


def hessian_logpdf_preconditioner(target, ds: DataSet, theta=None):
    """Approximate (negative) Hessian of the log-density in the latents named by target.

    Args:
        target: 'f' or ('f',) for the field; 'phi_mix' or ('phi_mix',) for the mixed potential
        ds: DataSet (or Mixed wrapper)
        theta: parameters the covariances are evaluated at (default fiducial)

    Returns:
        f: pinv(Cf) + B_hat^t M_hat^t pinv(Cn_hat) M_hat B_hat
        phi_mix: diag(pinv(Cphi) + pinv(Nphi)) as a FourierOp

    """
    if isinstance(ds, Mixed):
        ds = ds.ds
    theta = theta or {}
    key = _target_key(target)
    if key == ('f',):
        return _hessian_f(*ds.evaluated(theta, 'Cf', 'Cn_hat', 'M_hat', 'B_hat'))
    if key == ('phi_mix',) and isinstance(ds, BaseDataSet):
        if ds.Nphi is None:
            raise ValueError('phi_mix preconditioner needs Nphi, which is not set on this dataset')
        Cphi, Nphi = ds.evaluated(theta, 'Cphi', 'Nphi')
        if not isinstance(Cphi, FourierOp):
            raise PreconditionerNotDefinedError('phi_mix preconditioner needs a Fourier-diagonal Cphi, got {}'.format(Cphi))
        return FourierOp.from_diag(Cphi.proj, diag(pinv(Cphi) + pinv(Nphi)), Cphi.pol)
    raise PreconditionerNotDefinedError('no preconditioner defined for {} on {}'.format(key, type(ds).__name__))


@log_on_start(logging.INFO, "argmaxf_logpdf: tol={tol}, nsteps={nsteps}", logger=log)
@log_on_end(logging.INFO, "argmaxf_logpdf done", logger=log)
def argmaxf_logpdf(ds: DataSet, phi=None, theta=None, d=None, tol=1e-6, nsteps=500):
    """Maximizes the log-density over f at fixed phi and theta (the Wiener filter).

    Solves (pinv(Cf) + A^t pinv(Cn) A) f = A^t pinv(Cn) d, with A = M B L(phi), by
    preconditioned conjugate gradients.

    Returns:
        f and the number of iterations

    """
    theta = theta or {}
    d = np.asarray(ds._data(d))
    Cf, Cn, M, B = ds.evaluated(theta, 'Cf', 'Cn', 'M', 'B')
    L = ds.lens(phi) if isinstance(ds, BaseDataSet) else IdentityOp()
    A = M @ B @ L
    Ninv = pinv(Cn)
    hess = pinv(Cf) + A.T @ Ninv @ A
    precond = pinv(_hessian_f(*ds.evaluated(theta, 'Cf', 'Cn_hat', 'M_hat', 'B_hat')))

    b = (A.T @ Ninv @ d).astype(float)
    x = np.zeros_like(b)
    dot_op = lambda x, y: float(np.sum(x * y))
    criterion = cd_solve.criterion_rtol(b, dot_op, tol=tol, nsteps=nsteps)
    niter = cd_solve.cd_solve(x, b, hess.apply, [precond.apply], dot_op, criterion, cd_solve.tr_cg)
    return x, niter
