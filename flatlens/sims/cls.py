"""Power spectra: container, CAMB provider, instrumental noise and beam spectra, and their conversion to covariance operators.

Spectra are 1d arrays indexed by multipole, starting at ell = 0, with keys 'tt', 'ee', 'bb', 'te' and 'pp'
(lensing potential). Units are muK^2 (radians^2 for 'pp'), no ell(ell+1)/2pi factors.
"""

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import attr
import numpy as np

from flatlens.core.geometry import FlatProj, POL_COMPONENTS
from flatlens.core.operator import FourierOp
from flatlens.utils import clhash, extend_cl, camb_clfile

POL_SPECTRA = {
    'I': ('tt',),
    'P': ('ee', 'bb'),
    'IP': ('tt', 'ee', 'bb', 'te'),
}


@attr.s(eq=False)
class ClSpectra:
    """Named spectra of one cosmology.

    Attributes:
        ell: multipoles, arange(lmax + 1)
        unlensed_scalar, lensed_scalar, tensor, unlensed_total, total: dicts of spectra;
            'total' is lensed scalar plus tensor. 'pp' is carried by unlensed_scalar and total
        params: cosmological parameters the spectra were computed for, including 'r'
    """
    ell =               attr.field(converter=np.asarray)
    unlensed_scalar =   attr.field()
    lensed_scalar =     attr.field()
    tensor =            attr.field()
    unlensed_total =    attr.field()
    total =             attr.field()
    params =            attr.field(factory=dict)

    @property
    def lmax(self):
        return int(self.ell[-1])

    def hashdict(self):
        ret = {'params': {k: repr(v) for k, v in self.params.items()}}
        for name in ('unlensed_scalar', 'lensed_scalar', 'tensor', 'unlensed_total', 'total'):
            ret[name] = {k: clhash(v) for k, v in sorted(getattr(self, name).items())}
        return ret

    @classmethod
    def from_camb_files(cls, fn_unlensed, fn_lensed, fn_tensor=None, r=0., lmax=None):
        """Spectra from CAMB output files (lenspotentialCls, lensedCls and optionally tensCls types)."""
        unl = camb_clfile(fn_unlensed, lmax=lmax)
        len_ = camb_clfile(fn_lensed, lmax=lmax)
        lmax = min(len(unl['tt']), len(len_['tt'])) - 1
        unl = {k: extend_cl(v, lmax) for k, v in unl.items()}
        len_ = {k: extend_cl(v, lmax) for k, v in len_.items()}
        if fn_tensor is not None:
            ten = {k: extend_cl(v, lmax) for k, v in camb_clfile(fn_tensor, lmax=lmax).items()}
        else:
            ten = {k: np.zeros(lmax + 1) for k in ('tt', 'ee', 'bb', 'te')}
        return cls._from_components(lmax, unl, len_, ten, unl.get('pp', np.zeros(lmax + 1)), dict(r=r))

    @classmethod
    def _from_components(cls, lmax, unlensed_scalar, lensed_scalar, tensor, clpp, params):
        keys = ('tt', 'ee', 'bb', 'te')
        unlensed_scalar = {k: unlensed_scalar[k] for k in keys}
        lensed_scalar = {k: lensed_scalar[k] for k in keys}
        tensor = {k: tensor[k] for k in keys}
        unlensed_total = {k: unlensed_scalar[k] + tensor[k] for k in keys}
        total = {k: lensed_scalar[k] + tensor[k] for k in keys}
        unlensed_scalar['pp'] = total['pp'] = unlensed_total['pp'] = np.asarray(clpp)
        return cls(np.arange(lmax + 1), unlensed_scalar, lensed_scalar, tensor, unlensed_total, total, params)


@log_on_start(logging.INFO, "camb: r={r}, lmax={lmax}", logger=log)
@log_on_end(logging.INFO, "camb done", logger=log)
def camb(r=0.2, ombh2=0.0224567, omch2=0.118489, tau=0.055, cosmomc_theta=0.0104098,
         logA=3.043, ns=0.968602, k_pivot=0.002, AL=1., lmax=6000):
    """Runs CAMB (needs the optional `camb` package) and returns ClSpectra up to lmax."""
    import camb as pycamb
    pars = pycamb.CAMBparams()
    pars.set_cosmology(ombh2=ombh2, omch2=omch2, tau=tau, cosmomc_theta=cosmomc_theta, Alens=AL)
    pars.InitPower.set_params(As=np.exp(logA) * 1e-10, ns=ns, r=r, nt=-r / 8,
                              pivot_scalar=k_pivot, pivot_tensor=k_pivot)
    pars.WantTensors = True
    pars.set_for_lmax(lmax + 500, lens_potential_accuracy=1)
    results = pycamb.get_results(pars)
    powers = results.get_cmb_power_spectra(pars, CMB_unit='muK', raw_cl=True, lmax=lmax)

    def todict(arr):
        return {k: np.array(arr[:lmax + 1, i]) for i, k in enumerate(('tt', 'ee', 'bb', 'te'))}

    params = dict(r=r, ombh2=ombh2, omch2=omch2, tau=tau, cosmomc_theta=cosmomc_theta,
                  logA=logA, ns=ns, k_pivot=k_pivot, AL=AL)
    return ClSpectra._from_components(lmax, todict(powers['unlensed_scalar']), todict(powers['lensed_scalar']),
                                      todict(powers['tensor']), np.array(powers['lens_potential'][:lmax + 1, 0]), params)


def beam_cls(beam_fwhm=0., lmax=8000):
    """Gaussian beam transfer squared, b_l^2, for a beam_fwhm in arcmin."""
    ell = np.arange(lmax + 1)
    sigma = np.deg2rad(beam_fwhm / 60.) / np.sqrt(8 * np.log(2))
    return np.exp(-ell * (ell + 1) * sigma ** 2)


def noise_cls(uK_arcmin_T=3., uK_arcmin_P=None, beam_fwhm=0., ell_knee=100, alpha_knee=3, lmax=8000):
    """White plus 1/f noise spectra, divided by the beam (debeamed).

        N_l = (nlev [rad])^2 (1 + (ell_knee / ell)^alpha_knee) / b_l^2

    Polarization noise defaults to sqrt(2) times the temperature level. N_0 is set to zero.
    """
    if uK_arcmin_P is None:
        uK_arcmin_P = np.sqrt(2.) * uK_arcmin_T
    ell = np.arange(lmax + 1).astype(float)
    knee = np.ones(lmax + 1)
    if ell_knee:
        knee[1:] += (ell_knee / ell[1:]) ** alpha_knee
    bl2 = beam_cls(beam_fwhm, lmax)
    ret = {}
    for k, nlev in (('tt', uK_arcmin_T), ('ee', uK_arcmin_P), ('bb', uK_arcmin_P)):
        nl = np.deg2rad(nlev / 60.) ** 2 * knee / bl2
        nl[0] = 0.
        ret[k] = nl
    ret['te'] = np.zeros(lmax + 1)
    return ret


def Cl_to_cov(pol, proj: FlatProj, *cls, units=None):
    """Fourier-diagonal operator from 1d spectra.

    Args:
        pol: 'I' (tt), 'P' (ee, bb) or 'IP' (tt, ee, bb, te)
        proj: FlatProj
        cls: spectra in the order above
        units: factor applied to the spectra; defaults to 1 / pixel_area (covariances).
            Use units=1 for masks and transfer functions.

    """
    if pol not in POL_SPECTRA:
        raise ValueError("pol should be one of 'I', 'P', 'IP', got {}".format(pol))
    assert len(cls) == len(POL_SPECTRA[pol]), (pol, len(cls))
    if units is None:
        units = 1. / proj.pixel_area
    ell = proj.ell

    def on_grid(cl):
        cl = np.asarray(cl, dtype=float)
        return units * np.interp(ell, np.arange(len(cl)), cl, right=0.)

    n = len(POL_COMPONENTS[pol])
    mat = np.zeros(proj.fshape + (n, n))
    for i in range(n):
        mat[..., i, i] = on_grid(cls[i])
    if pol == 'IP':
        mat[..., 0, 1] = mat[..., 1, 0] = on_grid(cls[3])
    return FourierOp(proj, mat, pol)
