"""Flat-sky pixelization and its real-FFT harmonic grid.

Maps are arrays of shape (ncomp, Ny, Nx), optionally with a leading batch axis.
The harmonic representation is the unitary ('ortho') real FFT over the last two
axes, of shape (ncomp, Ny, Nx//2+1). Polarization is carried as Q, U in map
space and E, B in the harmonic basis.
"""

from __future__ import annotations

import os
from functools import cached_property

import attr
import numpy as np
import psutil
import scipy.fft


POL_COMPONENTS = {
    'I': ('T',),
    'P': ('E', 'B'),
    'IP': ('T', 'E', 'B'),
}


def _default_nthreads():
    return int(os.environ.get('OMP_NUM_THREADS', psutil.cpu_count()))


@attr.s(frozen=True, eq=False)
class FlatProj:
    """Periodic flat-sky patch of Ny x Nx square pixels of side theta_pix arcmin.

    Attributes:
        Ny, Nx: number of pixels along y (rows) and x (columns)
        theta_pix: pixel side in arcmin
        dtype: floating point precision of maps
        nthreads: FFT workers
    """
    Ny = attr.field(converter=int)
    Nx = attr.field(converter=int)
    theta_pix = attr.field(converter=float)
    dtype = attr.field(default=np.float32, converter=np.dtype)
    nthreads = attr.field(factory=_default_nthreads, converter=int)

    @Ny.validator
    @Nx.validator
    def _check_positive(self, attribute, value):
        if value < 2:
            raise ValueError('{} must be at least 2, got {}'.format(attribute.name, value))

    @theta_pix.validator
    def _check_theta_pix(self, attribute, value):
        if not value > 0:
            raise ValueError('theta_pix must be positive, got {}'.format(value))

    def __eq__(self, other):
        return isinstance(other, FlatProj) and self.hashdict() == other.hashdict()

    def __hash__(self):
        return hash((self.Ny, self.Nx, self.theta_pix, self.dtype.str))

    def hashdict(self):
        return {'Ny': self.Ny, 'Nx': self.Nx, 'theta_pix': self.theta_pix, 'dtype': self.dtype.str}

    @property
    def shape(self):
        return (self.Ny, self.Nx)

    @property
    def fshape(self):
        return (self.Ny, self.Nx // 2 + 1)

    @property
    def npix(self):
        return self.Ny * self.Nx

    @property
    def theta_pix_rad(self):
        return np.deg2rad(self.theta_pix / 60.)

    @property
    def pixel_area(self):
        """Pixel solid angle in steradians."""
        return self.theta_pix_rad ** 2

    @property
    def nyquist(self):
        return np.pi / self.theta_pix_rad

    @cached_property
    def lx(self):
        return 2 * np.pi * np.broadcast_to(np.fft.rfftfreq(self.Nx, d=self.theta_pix_rad)[None, :], self.fshape)

    @cached_property
    def ly(self):
        return 2 * np.pi * np.broadcast_to(np.fft.fftfreq(self.Ny, d=self.theta_pix_rad)[:, None], self.fshape)

    @cached_property
    def ell(self):
        return np.sqrt(self.lx ** 2 + self.ly ** 2)

    @cached_property
    def _rotation(self):
        phi = np.arctan2(self.ly, self.lx)
        c, s = np.cos(2 * phi), np.sin(2 * phi)
        if self.Nx % 2 == 0:
            # the Nyquist column stands for +lx and -lx at once, the rotation must be even in ly there
            c[:, -1], s[:, -1] = 1., 0.
        return c, s

    @property
    def cos2phi(self):
        return self._rotation[0]

    @property
    def sin2phi(self):
        return self._rotation[1]

    @cached_property
    def _ik(self):
        """Derivative kernels i lx, i ly, zero on the Nyquist frequencies of even axes."""
        ikx, iky = 1j * self.lx, 1j * self.ly
        if self.Nx % 2 == 0:
            ikx[:, -1] = 0.
        if self.Ny % 2 == 0:
            iky[self.Ny // 2] = 0.
        return ikx, iky

    @cached_property
    def rfft_multiplicity(self):
        """Number of full-plane Fourier modes each real-FFT coefficient stands for."""
        w = np.full(self.fshape, 2.)
        w[:, 0] = 1.
        if self.Nx % 2 == 0:
            w[:, -1] = 1.
        return w

    @property
    def ellmax(self):
        """Largest multipole present on the 2D Fourier grid."""
        return int(np.round(np.ceil(np.sqrt(2) * self.nyquist) + 1))

    def rfft(self, m):
        return scipy.fft.rfft2(m, norm='ortho', workers=self.nthreads)

    def irfft(self, mk):
        return scipy.fft.irfft2(mk, s=self.shape, norm='ortho', workers=self.nthreads)

    def map2harmonic(self, m, pol):
        """Real FFT of a map, rotating Q, U to E, B for polarized components."""
        mk = self.rfft(np.asarray(m))
        if pol in ('P', 'IP'):
            q, u = mk[..., -2, :, :], mk[..., -1, :, :]
            c, s = self.cos2phi, self.sin2phi
            e = c * q + s * u
            b = -s * q + c * u
            mk = np.concatenate([mk[..., :-2, :, :], e[..., None, :, :], b[..., None, :, :]], axis=-3)
        return mk

    def harmonic2map(self, mk, pol):
        """Inverse of map2harmonic."""
        if pol in ('P', 'IP'):
            e, b = mk[..., -2, :, :], mk[..., -1, :, :]
            c, s = self.cos2phi, self.sin2phi
            q = c * e - s * b
            u = s * e + c * b
            mk = np.concatenate([mk[..., :-2, :, :], q[..., None, :, :], u[..., None, :, :]], axis=-3)
        return self.irfft(mk)

    def zeros(self, ncomp=1, nbatch=None):
        shape = (ncomp,) + self.shape
        if nbatch is not None and nbatch > 1:
            shape = (nbatch,) + shape
        return np.zeros(shape, dtype=self.dtype)

    def grad(self, m):
        """Spectral gradient (d/dx, d/dy) of a scalar map of shape (..., 1, Ny, Nx)."""
        mk = self.rfft(np.asarray(m))
        ikx, iky = self._ik
        return self.irfft(ikx * mk), self.irfft(iky * mk)
