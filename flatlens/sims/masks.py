"""Pixel masks and harmonic band-pass windows."""

import logging
log = logging.getLogger(__name__)

import attr
import numpy as np
from scipy import ndimage


@attr.s(frozen=True)
class BandPass:
    """Top-hat window keeping ell_min <= ell <= ell_max."""
    ell_min = attr.field(default=0., converter=float)
    ell_max = attr.field(default=np.inf, converter=float)

    def Wl(self, lmax):
        ell = np.arange(lmax + 1)
        return ((ell >= self.ell_min) & (ell <= self.ell_max)).astype(float)

    def hashdict(self):
        return {'type': 'BandPass', 'ell_min': self.ell_min, 'ell_max': self.ell_max}


def LowPass(ell_max):
    return BandPass(0., ell_max)


def HighPass(ell_min):
    return BandPass(ell_min, np.inf)


def make_mask(rng, Nside, theta_pix, edge_padding_deg=0., apodization_deg=0., num_ptsrcs=0, ptsrc_radius_arcmin=0.):
    """Random pixel mask of a periodic patch.

    Args:
        rng: numpy random generator placing the point sources
        Nside: number of pixels, int or (Ny, Nx)
        theta_pix: pixel side in arcmin
        edge_padding_deg: width of the masked border
        apodization_deg: width of the cosine taper at the mask edges
        num_ptsrcs: number of masked point sources
        ptsrc_radius_arcmin: radius of the point-source holes

    Returns:
        (Ny, Nx) array with values in [0, 1]

    """
    Ny, Nx = (Nside, Nside) if np.isscalar(Nside) else tuple(Nside)
    mask = np.ones((Ny, Nx), dtype=bool)

    pad = int(round(edge_padding_deg * 60. / theta_pix))
    if pad > 0:
        mask[:pad, :] = mask[-pad:, :] = False
        mask[:, :pad] = mask[:, -pad:] = False

    if num_ptsrcs > 0:
        radius = ptsrc_radius_arcmin / theta_pix
        iy, ix = np.meshgrid(np.arange(Ny), np.arange(Nx), indexing='ij')
        for cy, cx in zip(rng.uniform(0, Ny, num_ptsrcs), rng.uniform(0, Nx, num_ptsrcs)):
            dy = np.abs(iy - cy)
            dx = np.abs(ix - cx)
            dy = np.minimum(dy, Ny - dy)
            dx = np.minimum(dx, Nx - dx)
            mask &= dy ** 2 + dx ** 2 > radius ** 2
    log.debug('mask: {:.1f}% of pixels kept'.format(100. * np.mean(mask)))

    if apodization_deg > 0 and np.any(~mask):
        width = apodization_deg * 60. / theta_pix
        dist = ndimage.distance_transform_edt(mask)
        return np.where(dist >= width, 1., 0.5 * (1. - np.cos(np.pi * np.minimum(dist, width) / width)))
    return mask.astype(float)
