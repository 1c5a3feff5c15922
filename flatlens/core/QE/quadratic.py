"""Flat-sky quadratic-estimator reconstruction noise of the lensing potential.

Hu & Okamoto (2002) N0 of the TT and EB estimators, evaluated with FFT convolutions
on the Fourier grid of the patch:

    1/N0_TT(L) = int d^2l/(2pi)^2 f_TT(l, L-l)^2 / (2 T_l T_{L-l}),   f_TT = (L.l) C_l + (L.(L-l)) C_{L-l}
    1/N0_EB(L) = int d^2l/(2pi)^2 ((L.l) C^EE_l sin 2(phi_l - phi_{L-l}))^2 / (E_l B_{L-l})

with C the lensed spectra and T, E, B the total (signal plus beam-deconvolved noise)
spectra of the observed modes.
"""

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import numpy as np

from flatlens.core.geometry import FlatProj, POL_COMPONENTS
from flatlens.core.operator import FourierOp, IdentityOp
from flatlens.core.param_operator import evaluate


def _fdiag(op, proj, n):
    op = evaluate(op)
    if isinstance(op, FourierOp):
        return op.diag()
    if isinstance(op, IdentityOp):
        return op.s * np.ones((n,) + proj.fshape)
    raise ValueError('quadratic estimator noise needs Fourier-diagonal operators, got {}'.format(op))


def _full(a, proj: FlatProj):
    """Expands an even function from the real-FFT layout (..., Ny, Nx//2+1) to the full (..., Ny, Nx) grid."""
    Ny, Nx = proj.shape
    nh = Nx // 2 + 1
    ret = np.zeros(a.shape[:-1] + (Nx,))
    ret[..., :nh] = a
    iy = (-np.arange(Ny)) % Ny
    ret[..., nh:] = a[..., iy, :][..., Nx - np.arange(nh, Nx)]
    return ret


class _conv:
    """(G * H)(L) = int d^2l/(2pi)^2 G(l) H(L - l) on the full Fourier grid."""
    def __init__(self, proj: FlatProj):
        self.norm = 1. / proj.pixel_area

    def __call__(self, G, H):
        return self.norm * np.real(np.fft.fft2(np.fft.ifft2(G) * np.fft.ifft2(H)))


def _grids(proj: FlatProj):
    lx = 2 * np.pi * np.fft.fftfreq(proj.Nx, d=proj.theta_pix_rad)[None, :] * np.ones(proj.shape)
    ly = 2 * np.pi * np.fft.fftfreq(proj.Ny, d=proj.theta_pix_rad)[:, None] * np.ones(proj.shape)
    return lx, ly


def _A_TT(proj, C, iT):
    conv = _conv(proj)
    ls = _grids(proj)
    A = np.zeros(proj.shape)
    for li in ls:
        for lj in ls:
            A += li * lj * (conv(li * lj * C ** 2 * iT, iT) + conv(li * C * iT, lj * C * iT))
    return A


def _A_EB(proj, CE, iE, iB):
    conv = _conv(proj)
    ls = _grids(proj)
    phi = np.arctan2(ls[1], ls[0])
    c, s = np.cos(2 * phi), np.sin(2 * phi)
    A = np.zeros(proj.shape)
    for li in ls:
        for lj in ls:
            w = li * lj * CE ** 2 * iE
            A += li * lj * (conv(w * s ** 2, c ** 2 * iB) + conv(w * c ** 2, s ** 2 * iB) - 2. * conv(w * s * c, s * c * iB))
    return A


@log_on_start(logging.INFO, "quadratic_estimate_noise: pol={pol}", logger=log)
@log_on_end(logging.INFO, "quadratic_estimate_noise done", logger=log)
def quadratic_estimate_noise(ds, proj: FlatProj = None, pol=None):
    """N0 of the lensing potential quadratic estimator as a covariance operator.

    Args:
        ds: lensing DataSet providing Cf_lensed (falls back to Cf), Cn_hat, M_hat and B_hat
        proj: FlatProj of the patch (default: inferred from ds)
        pol: 'I' (TT estimator), 'P' (EB) or 'IP' (minimum variance combination of TT and EB)

    Returns:
        FourierOp with entries N0(L) / pixel_area, zero at L = 0 and where no mode is observed

    """
    if proj is None:
        proj = ds._proj()
    Cf_lensed = ds.Cf_lensed
    if Cf_lensed is None:
        log.warning('dataset has no lensed field covariance, using the unlensed one')
        Cf_lensed = ds.Cf
    Cl_op = evaluate(Cf_lensed)
    if pol is None:
        pol = Cl_op.pol
    if pol not in POL_COMPONENTS:
        raise ValueError("pol should be one of 'I', 'P', 'IP', got {}".format(pol))
    if not set(POL_COMPONENTS[pol]) <= set(POL_COMPONENTS[Cl_op.pol]):
        raise ValueError('cannot build the {} estimator from {} spectra'.format(pol, Cl_op.pol))
    n = len(POL_COMPONENTS[Cl_op.pol])

    C = _full(_fdiag(Cl_op, proj, n), proj) * proj.pixel_area
    N = _full(_fdiag(ds.Cn_hat, proj, n), proj) * proj.pixel_area
    mb = _full(_fdiag(ds.M_hat, proj, n) * _fdiag(ds.B_hat, proj, n), proj)
    observed = mb != 0
    tot = np.where(observed, C + N / np.where(observed, mb, 1.) ** 2, 0.)
    itot = np.where(tot > 0, 1. / np.where(tot > 0, tot, 1.), 0.)

    comps = POL_COMPONENTS[Cl_op.pol]
    A = np.zeros(proj.shape)
    if pol in ('I', 'IP'):
        iT = comps.index('T')
        A += _A_TT(proj, C[iT], itot[iT])
    if pol in ('P', 'IP'):
        iE, iB = comps.index('E'), comps.index('B')
        A += _A_EB(proj, C[iE], itot[iE], itot[iB])

    # the Nyquist frequencies are their own mirror image, only the L -> -L even part is kept
    iy, ix = (-np.arange(proj.Ny)) % proj.Ny, (-np.arange(proj.Nx)) % proj.Nx
    A = 0.5 * (A + A[iy][:, ix])
    A = A[:, :proj.fshape[1]]
    N0 = np.where(A > 0, 1. / np.where(A > 0, A, 1.), 0.)
    N0[0, 0] = 0.
    return FourierOp.from_diag(proj, N0[None] / proj.pixel_area, 'I')
