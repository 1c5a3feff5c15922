#!/usr/bin/env python

"""sim_mm.py: Contains the metamodel of a simulated flat-sky lensing dataset.
    `FLATLENS_Simulation` collects every option of `load_sim`. We use the attr package; it provides
    validation and defaulting, and every configuration is checked before any simulation work is done.
"""

import warnings

import attr
import numpy as np

import logging
log = logging.getLogger(__name__)

from flatlens.config.etc.errorhandler import ConfigurationConflictError
from flatlens.config.validator import sim
from flatlens.core.lensing import InterpLensing
from flatlens.sims.masks import LowPass


@attr.s(eq=False)
class FLATLENS_Simulation:
    """Configuration of a simulated dataset.

    Attributes:
        theta_pix: pixel side in arcmin
        Nside: number of pixels, int or (Ny, Nx)
        pol: 'I', 'P' or 'IP'
        dtype: np.float32 or np.float64
        storage: array constructor the operators are adapted to
        Nbatch: if set, the data is repeated along a batch axis of this size
        uK_arcmin_T: temperature white noise level, muK arcmin (polarization is sqrt(2) larger)
        ell_knee, alpha_knee: 1/f noise knee and slope
        Cl_noise: noise spectra (dict), overrides the noise parameters
        Cn: noise covariance operator, overrides Cl_noise
        beam_fwhm: Gaussian beam FWHM in arcmin
        B, B_hat: beam operators, override beam_fwhm
        pixel_mask_kwargs: keyword arguments to `make_mask`; None for no pixel mask
        bandpass_mask: BandPass window applied in harmonic space
        M, M_hat: mask operators, override the two above
        Cl: ClSpectra; computed with CAMB when not given
        fiducial_theta: fiducial parameters, e.g. {'r': 0.1, 'Aphi': 1.}; all but Aphi are passed to CAMB
        rfid: deprecated, use fiducial_theta={'r': ...}
        seed, rng: random seed or generator
        D, G: mixing operators; built from the dataset covariances when not given
        Nphi_fac: Nphi is the quadratic estimator noise divided by this
        L: lensing operator type or template
    """
    theta_pix =         attr.field(validator=sim.theta_pix)
    Nside =             attr.field(validator=sim.Nside)
    pol =               attr.field(validator=sim.pol)
    dtype =             attr.field(default=np.float32, validator=sim.dtype)
    storage =           attr.field(default=np.asarray)
    Nbatch =            attr.field(default=None, validator=sim.Nbatch)
    uK_arcmin_T =       attr.field(default=3., validator=sim.uK_arcmin_T)
    ell_knee =          attr.field(default=100., validator=sim.ell_knee)
    alpha_knee =        attr.field(default=3.)
    Cl_noise =          attr.field(default=None)
    Cn =                attr.field(default=None)
    beam_fwhm =         attr.field(default=0., validator=sim.beam_fwhm)
    B =                 attr.field(default=None)
    B_hat =             attr.field(default=None)
    pixel_mask_kwargs = attr.field(default=None)
    bandpass_mask =     attr.field(factory=lambda: LowPass(3000))
    M =                 attr.field(default=None)
    M_hat =             attr.field(default=None)
    Cl =                attr.field(default=None)
    fiducial_theta =    attr.field(factory=dict, converter=dict)
    rfid =              attr.field(default=None)
    seed =              attr.field(default=None, validator=sim.seed)
    rng =               attr.field(default=None)
    D =                 attr.field(default=None)
    G =                 attr.field(default=None)
    Nphi_fac =          attr.field(default=2., validator=sim.Nphi_fac)
    L =                 attr.field(default=InterpLensing)

    def __attrs_post_init__(self):
        if self.rfid is not None:
            warnings.warn("`rfid` will be removed in a future version. Use `fiducial_theta={'r': ...}` instead.", DeprecationWarning, stacklevel=3)
            log.warning("`rfid` is deprecated, use `fiducial_theta={'r': ...}`")
            self.fiducial_theta = dict(self.fiducial_theta, r=self.rfid)
            self.rfid = None
        if self.Cl is not None and self.cosmo_theta:
            raise ConfigurationConflictError("Can't pass both `Cl` and `fiducial_theta` parameters which affect `Cl` ({}), choose one or the other.".format(sorted(self.cosmo_theta)))

    @property
    def shape(self):
        return (int(self.Nside), int(self.Nside)) if np.isscalar(self.Nside) else tuple(int(n) for n in self.Nside)

    @property
    def Aphi0(self):
        return float(self.fiducial_theta.get('Aphi', 1.))

    @property
    def cosmo_theta(self):
        """Fiducial parameters which affect the spectra."""
        return {k: v for k, v in self.fiducial_theta.items() if k != 'Aphi'}
