"""Builders of simulated flat-sky lensing datasets."""

import copy

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import numpy as np

from flatlens.config.etc.errorhandler import InsufficientRangeError
from flatlens.config.metamodel.sim_mm import FLATLENS_Simulation
from flatlens.core.dataset import BaseDataSet, NoLensingDataSet
from flatlens.core.geometry import FlatProj, POL_COMPONENTS
from flatlens.core.lensing import InterpLensing, precompute
from flatlens.core.operator import IdentityOp, PixelOp, pinv, sqrtm
from flatlens.core.param_operator import ParamDependentOp
from flatlens.core.QE.quadratic import quadratic_estimate_noise
from flatlens.sims.cls import POL_SPECTRA, Cl_to_cov, beam_cls, camb, noise_cls
from flatlens.sims.masks import make_mask
from flatlens.utils import batch, timer


@log_on_start(logging.INFO, "load_sim started", logger=log)
@log_on_end(logging.INFO, "load_sim finished", logger=log)
def load_sim(**kwargs):
    """Builds a lensing DataSet from instrumental and cosmological parameters, and simulates its data.

    Keyword arguments are the attributes of `FLATLENS_Simulation`, e.g.::

        sim = load_sim(theta_pix=2, Nside=64, pol='P', uK_arcmin_T=1, beam_fwhm=1, seed=0)
        ds, f, phi = sim['ds'], sim['f'], sim['phi']

    Returns:
        dict with the unlensed field f, lensed field f_lensed, potential phi, data d, the DataSet ds,
        ds0 (ds at its fiducial parameters), the spectra Cl and the FlatProj proj

    """
    cfg = FLATLENS_Simulation(**kwargs)
    tim = timer(False, prefix='load_sim')

    Ny, Nx = cfg.shape
    dtype = np.dtype(cfg.dtype)
    proj = FlatProj(Ny, Nx, cfg.theta_pix, dtype=dtype)
    storage = cfg.storage
    rng = cfg.rng if cfg.rng is not None else np.random.default_rng(cfg.seed)

    # the biggest ell on the 2D fourier grid
    ellmax = proj.ellmax

    Cl = cfg.Cl
    if Cl is None:
        Cl = camb(lmax=ellmax, **cfg.cosmo_theta)
    elif Cl.lmax < ellmax:
        raise InsufficientRangeError("lmax of `Cl` should be at least {} for this configuration, got {}".format(ellmax, Cl.lmax))
    r0 = float(Cl.params.get('r', 0.))
    Aphi0 = cfg.Aphi0
    tim.add('spectra')

    # noise spectra are not debeamed here, the beam comes in through B
    Cl_noise = cfg.Cl_noise
    if Cl_noise is None:
        Cl_noise = noise_cls(uK_arcmin_T=cfg.uK_arcmin_T, beam_fwhm=0., ell_knee=cfg.ell_knee, alpha_knee=cfg.alpha_knee, lmax=ellmax)

    pol = cfg.pol
    ks = POL_SPECTRA[pol]
    ncomp = len(POL_COMPONENTS[pol])

    # covariances
    Cphi0 = Cl_to_cov('I', proj, Cl.total['pp']).adapt(storage)
    Cfs = Cl_to_cov(pol, proj, *(Cl.unlensed_scalar[k] for k in ks)).adapt(storage)
    Cft = Cl_to_cov(pol, proj, *(Cl.tensor[k] for k in ks)).adapt(storage)
    Cf_lensed = Cl_to_cov(pol, proj, *(Cl.total[k] for k in ks)).adapt(storage)
    Cn_hat = Cl_to_cov(pol, proj, *(Cl_noise[k] for k in ks)).adapt(storage)
    Cn = Cn_hat if cfg.Cn is None else cfg.Cn

    def Cf_of(r=r0, **_):
        return Cfs + ((r / r0) if r0 else 0.) * Cft

    def Cphi_of(Aphi=Aphi0, **_):
        return Aphi * Cphi0

    Cf = ParamDependentOp(Cf_of)
    Cphi = ParamDependentOp(Cphi_of)
    tim.add('covariances')

    # data mask
    M, M_hat = cfg.M, cfg.M_hat
    if M is None:
        Wl = cfg.bandpass_mask.Wl(ellmax)
        Mfourier = Cl_to_cov(pol, proj, *((0. if k == 'te' else 1.) * Wl for k in ks), units=1).adapt(storage)
        if cfg.pixel_mask_kwargs is not None:
            mask = make_mask(copy.deepcopy(rng), (Ny, Nx), cfg.theta_pix, **cfg.pixel_mask_kwargs).astype(dtype)
            Mpix = PixelOp(proj, storage(np.repeat(mask[None], ncomp, axis=0)))
        else:
            Mpix = IdentityOp()
        M = Mfourier @ Mpix
        if M_hat is None:
            M_hat = Mfourier
    elif M_hat is None:
        M_hat = M

    # beam
    B = cfg.B
    if B is None:
        bl = np.sqrt(beam_cls(cfg.beam_fwhm, ellmax))
        B = Cl_to_cov(pol, proj, *((0. if k == 'te' else 1.) * bl for k in ks), units=1).adapt(storage)
    B_hat = B if cfg.B_hat is None else cfg.B_hat
    tim.add('masks and beam')

    # preallocate lensing operator memory
    L = precompute(cfg.L, proj.zeros(1), f=proj.zeros(ncomp), proj=proj)

    ds = BaseDataSet(Cn=Cn, Cn_hat=Cn_hat, Cf=Cf, Cf_lensed=Cf_lensed, Cphi=Cphi,
                     M=M, M_hat=M_hat, B=B, B_hat=B_hat, L=L)

    sim = ds.simulate(rng=rng)
    f, f_lensed, phi = sim['f'], sim['f_lensed'], sim['phi']
    ds.d = sim['d']
    tim.add('simulation')

    # with the DataSet created, the mixing operators follow from its covariances
    ds.Nphi = Nphi = quadratic_estimate_noise(ds, proj, pol) / cfg.Nphi_fac
    tim.add('Nphi')

    G = cfg.G
    if G is None:
        G0 = sqrtm(IdentityOp() + 2 * Nphi @ pinv(Cphi()))

        def G_of(Aphi=Aphi0, **_):
            return pinv(G0) @ sqrtm(IdentityOp() + 2 * Nphi @ pinv(Cphi(Aphi=Aphi)))

        G = ParamDependentOp(G_of)
    ds.G = G

    D = cfg.D
    if D is None:
        sigma2_len = np.deg2rad(5. / 60.) ** 2

        def D_of(r=r0, **_):
            Cfr = Cf(r=r)
            return sqrtm((Cfr + sigma2_len + 2 * Cn_hat) @ pinv(Cfr))

        D = ParamDependentOp(D_of)
    ds.D = D

    if cfg.Nbatch is not None:
        ds.d = batch(ds.d, cfg.Nbatch)
        ds.L = precompute(ds.L, batch(phi, cfg.Nbatch), f=ds.d)
    tim.add('mixing')
    log.debug('\n' + str(tim))

    return dict(f=f, f_lensed=f_lensed, phi=phi, d=ds.d, ds=ds, ds0=ds(), Cl=Cl, proj=proj)


def load_nolensing_sim(lensed_covariance=False, lensed_data=False, L=None, **kwargs):
    """No-lensing DataSet sharing the operators of a `load_sim` simulation.

    Args:
        lensed_covariance: model the field with the lensed instead of the unlensed covariance
        lensed_data: simulate lensed data (otherwise the lensing operator is the identity)
        L: lensing operator used for the simulation, overrides lensed_data
        kwargs: `load_sim` options

    """
    if L is None:
        L = InterpLensing if lensed_data else IdentityOp()
    sim = load_sim(L=L, **kwargs)
    ds = sim['ds']
    Cf = ds.Cf_lensed if lensed_covariance else ds.Cf
    ds_nl = NoLensingDataSet(d=ds.d, Cf=Cf, Cn=ds.Cn, Cn_hat=ds.Cn_hat, M=ds.M, M_hat=ds.M_hat, B=ds.B, B_hat=ds.B_hat)
    return dict(f=sim['f'], f_lensed=sim['f_lensed'], phi=sim['phi'], d=ds.d, ds=ds_nl, ds0=ds_nl(),
                Cl=sim['Cl'], proj=sim['proj'])
