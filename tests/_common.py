"""Analytic toy spectra and small datasets shared by the tests."""

import numpy as np

from flatlens.core.dataset import BaseDataSet, NoLensingDataSet
from flatlens.core.geometry import FlatProj
from flatlens.core.operator import FourierOp, PixelOp
from flatlens.sims.cls import ClSpectra, Cl_to_cov, noise_cls, beam_cls


def toy_spectra(lmax=8000, r=0.1):
    """Smooth, strictly positive spectra for ell >= 2, shaped roughly like the CMB ones."""
    ell = np.arange(lmax + 1, dtype=float)
    tt = np.zeros(lmax + 1)
    tt[2:] = 2 * np.pi * 5000. / (ell[2:] * (ell[2:] + 1)) * np.exp(-(ell[2:] / 2500.) ** 2) + 1e-6
    ee = 0.05 * tt
    bb = 0.001 * tt
    te = 0.5 * np.sqrt(tt * ee)
    pp = np.zeros(lmax + 1)
    pp[2:] = 2 * np.pi * 1e-7 / (ell[2:] * (ell[2:] + 1)) ** 2
    unl = dict(tt=tt, ee=ee, bb=bb, te=te)
    len_ = dict(tt=tt * 1.01, ee=ee * 1.01, bb=bb + 0.002 * ee, te=te)
    ten = dict(tt=0.01 * r * tt, ee=0.001 * r * tt, bb=0.001 * r * tt, te=np.zeros(lmax + 1))
    return ClSpectra._from_components(lmax, unl, len_, ten, pp, dict(r=r))


def write_camb_files(fn_unlensed, fn_lensed, lmax=8000):
    """Writes toy spectra in the CAMB lenspotentialCls / lensedCls formats."""
    cls = toy_spectra(lmax)
    ell = cls.ell[2:].astype(float)
    w = ell * (ell + 1) / (2 * np.pi)
    wpp = ell ** 2 * (ell + 1) ** 2 / (2 * np.pi)
    zeros = np.zeros_like(ell)
    unl = [cls.unlensed_scalar[k][2:] * w for k in ('tt', 'ee', 'bb', 'te')]
    np.savetxt(fn_unlensed, np.array([ell] + unl + [cls.total['pp'][2:] * wpp, zeros, zeros]).T)
    np.savetxt(fn_lensed, np.array([ell] + [cls.lensed_scalar[k][2:] * w for k in ('tt', 'ee', 'bb', 'te')]).T)


def toy_proj(N=16, theta_pix=2., dtype=np.float64):
    Ny, Nx = (N, N) if np.isscalar(N) else N
    return FlatProj(Ny, Nx, theta_pix, dtype=dtype, nthreads=1)


def toy_operators(proj, pol='I', beam_fwhm=3., uK_arcmin=3., masked=True):
    """Covariances, beam and masks of a small dataset, as a dict of DataSet fields."""
    cls = toy_spectra()
    ks = {'I': ('tt',), 'P': ('ee', 'bb'), 'IP': ('tt', 'ee', 'bb', 'te')}[pol]
    ncomp = {'I': 1, 'P': 2, 'IP': 3}[pol]
    nl = noise_cls(uK_arcmin_T=uK_arcmin, ell_knee=0, lmax=cls.lmax)
    bl = np.sqrt(beam_cls(beam_fwhm, cls.lmax))
    ret = dict(
        Cf=Cl_to_cov(pol, proj, *(cls.unlensed_scalar[k] for k in ks)),
        Cn=Cl_to_cov(pol, proj, *(nl[k] for k in ks)),
        B=Cl_to_cov(pol, proj, *((0. if k == 'te' else 1.) * bl for k in ks), units=1),
    )
    if masked:
        mask = np.ones((ncomp,) + proj.shape)
        mask[:, :2, :] = 0.
        ret['M'] = PixelOp(proj, mask)
        ret['M_hat'] = FourierOp.from_diag(proj, np.ones((ncomp,) + proj.fshape), pol)
    return ret, cls


def toy_nolensing(proj, pol='I', **kwargs):
    ops, _ = toy_operators(proj, pol, **kwargs)
    return NoLensingDataSet(**ops)


def toy_lensing(proj, pol='I', L=None, **kwargs):
    ops, cls = toy_operators(proj, pol, **kwargs)
    extra = {} if L is None else dict(L=L)
    return BaseDataSet(Cphi=Cl_to_cov('I', proj, cls.total['pp']), **ops, **extra)


def small_phi(proj, rng, rms_pixels=0.05):
    """Smooth potential whose deflection has an rms of a fraction of a pixel."""
    phi = rng.standard_normal((1,) + proj.shape)
    lk = proj.rfft(phi) * np.exp(-(proj.ell / 3000.) ** 2)
    phi = proj.irfft(lk)
    dx, dy = proj.grad(phi)
    rms = np.sqrt(np.mean(dx ** 2 + dy ** 2)) / proj.theta_pix_rad
    return phi * (rms_pixels / rms)
