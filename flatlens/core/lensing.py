"""Lensing operator with an owned, in-place refreshed interpolation cache.

`InterpLensing` remaps fields by the deflection d = grad(phi):

    f_lensed(x) = f(x + d(x))

using periodic bicubic (Keys, a = -0.5) or bilinear interpolation. The remapping
is a sparse matrix with a fixed number of entries per pixel, so its data and
index buffers are allocated once and overwritten by every `refresh`.

Note:
    A cache is a mutable object. After `L.refresh(phi)` (equivalently `L(phi)`),
    any earlier handle on `L` (its transpose and inverse included) sees the new
    deflection. Concurrent callers should each own a `copy()`.
"""

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import splu

from flatlens.core.geometry import FlatProj
from flatlens.core.operator import LinearOp, IdentityOp
from flatlens.utils import batch, batch_length


def _keys_weights(t):
    """Keys cubic convolution weights for the taps at offsets -1, 0, 1, 2."""
    t2, t3 = t ** 2, t ** 3
    return np.stack([-0.5 * t3 + t2 - 0.5 * t,
                     1.5 * t3 - 2.5 * t2 + 1.,
                     -1.5 * t3 + 2. * t2 + 0.5 * t,
                     0.5 * t3 - 0.5 * t2], axis=-1)


def _linear_weights(t):
    return np.stack([1. - t, t], axis=-1)


_STENCILS = {
    1: (np.array([0, 1]), _linear_weights),
    3: (np.array([-1, 0, 1, 2]), _keys_weights),
}


class InterpLensing(LinearOp):
    """Interpolation lensing cache.

    Args:
        proj: FlatProj of the fields and of phi
        phi: lensing potential, (1, Ny, Nx) or (nbatch, 1, Ny, Nx); None is no deflection
        nbatch: number of independent potentials held by the cache
        order: 3 (bicubic) or 1 (bilinear)

    """
    def __init__(self, proj: FlatProj, phi=None, nbatch=1, order=3):
        if order not in _STENCILS:
            raise ValueError('order should be one of {}, got {}'.format(list(_STENCILS), order))
        self.proj = proj
        self.nbatch = int(nbatch)
        self.order = order
        self.ntaps = len(_STENCILS[order][0]) ** 2

        npix = proj.npix
        self._data = np.zeros((self.nbatch, npix * self.ntaps), dtype=float)
        self._indices = np.zeros((self.nbatch, npix * self.ntaps), dtype=np.int32)
        self._indptr = np.arange(0, npix * self.ntaps + 1, self.ntaps, dtype=np.int32)
        self._mats = [None] * self.nbatch
        self._lus = [None] * self.nbatch
        self.phi = None
        if phi is None:
            phi = proj.zeros(1, self.nbatch)
        self.refresh(phi)

    def __repr__(self):
        return 'InterpLensing(shape={}, nbatch={}, order={})'.format(self.proj.shape, self.nbatch, self.order)

    def hashdict(self):
        return {'type': 'InterpLensing', 'proj': self.proj.hashdict(), 'nbatch': self.nbatch, 'order': self.order}

    def __call__(self, phi=None, *args, **kwargs):
        if phi is None:
            return self
        return self.refresh(phi)

    @log_on_start(logging.DEBUG, "refresh: nbatch={self.nbatch}, order={self.order}", logger=log)
    @log_on_end(logging.DEBUG, "refresh done", logger=log)
    def refresh(self, phi):
        """Overwrites the cache with the remapping for phi and returns self."""
        phi = np.asarray(phi)
        if batch_length(phi) != self.nbatch:
            raise ValueError('phi has batch size {}, the cache was allocated for {}'.format(batch_length(phi), self.nbatch))
        phis = phi.reshape((self.nbatch, 1) + self.proj.shape)
        for b in range(self.nbatch):
            self._fill(b, phis[b])
        self.phi = phi.copy()
        return self

    def _fill(self, b, phi):
        Ny, Nx = self.proj.shape
        offsets, weights = _STENCILS[self.order]
        dx, dy = self.proj.grad(phi.astype(float))
        iy, ix = np.meshgrid(np.arange(Ny), np.arange(Nx), indexing='ij')
        y = iy + dy[0] / self.proj.theta_pix_rad
        x = ix + dx[0] / self.proj.theta_pix_rad
        y0, x0 = np.floor(y), np.floor(x)
        wy, wx = weights(y - y0), weights(x - x0)
        rows = (y0.astype(int)[..., None] + offsets) % Ny
        cols = (x0.astype(int)[..., None] + offsets) % Nx

        data = self._data[b].reshape(Ny, Nx, len(offsets), len(offsets))
        indices = self._indices[b].reshape(Ny, Nx, len(offsets), len(offsets))
        np.multiply(wy[..., :, None], wx[..., None, :], out=data)
        indices[...] = rows[..., :, None] * Nx + cols[..., None, :]
        self._mats[b] = csr_matrix((self._data[b], self._indices[b], self._indptr), shape=(Ny * Nx, Ny * Nx), copy=False)
        self._lus[b] = None

    def _lu(self, b):
        if self._lus[b] is None:
            mat = self._mats[b].tocsc()
            mat.sum_duplicates()
            self._lus[b] = splu(mat)
        return self._lus[b]

    def _apply_batched(self, f, matvec):
        f = np.asarray(f)
        npix = self.proj.npix
        nf = batch_length(f)
        if self.nbatch > 1 and nf != self.nbatch:
            raise ValueError('field has batch size {}, the cache holds {}'.format(nf, self.nbatch))
        fs = f.reshape((nf, -1, npix))
        ret = np.empty(fs.shape, dtype=float)
        for i in range(nf):
            b = i if self.nbatch > 1 else 0
            ret[i] = matvec(b, fs[i].T.astype(float)).T
        ret = ret.reshape(f.shape)
        return ret.astype(f.dtype, copy=False) if np.issubdtype(f.dtype, np.floating) else ret

    def apply(self, f):
        return self._apply_batched(f, lambda b, x: self._mats[b] @ x)

    def apply_adjoint(self, f):
        return self._apply_batched(f, lambda b, x: self._mats[b].T @ x)

    def solve(self, f):
        return self._apply_batched(f, lambda b, x: self._lu(b).solve(x))

    def solve_adjoint(self, f):
        return self._apply_batched(f, lambda b, x: self._lu(b).solve(x, trans='T'))

    def adjoint(self):
        return _AdjointLensing(self)

    def pinv(self):
        return _InverseLensing(self)

    def logdet(self):
        ret = 0.
        for b in range(self.nbatch):
            lu = self._lu(b)
            ret += np.sum(np.log(np.abs(lu.U.diagonal())))
        return float(ret)

    def copy(self):
        """Independent cache at the same deflection, with freshly allocated buffers."""
        return InterpLensing(self.proj, phi=self.phi, nbatch=self.nbatch, order=self.order)

    def __copy__(self):
        return self.copy()

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_mats'] = [None] * self.nbatch
        state['_lus'] = [None] * self.nbatch
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        npix = self.proj.npix
        for b in range(self.nbatch):
            self._mats[b] = csr_matrix((self._data[b], self._indices[b], self._indptr), shape=(npix, npix), copy=False)


class _AdjointLensing(LinearOp):
    def __init__(self, parent: InterpLensing):
        self.parent = parent

    def __repr__(self):
        return '{}.T'.format(self.parent)

    def apply(self, f):
        return self.parent.apply_adjoint(f)

    def adjoint(self):
        return self.parent

    def solve(self, f):
        return self.parent.solve_adjoint(f)

    def pinv(self):
        return _InverseLensing(self.parent).adjoint()

    def hashdict(self):
        return {'type': 'adjoint', 'op': self.parent.hashdict()}


class _InverseLensing(LinearOp):
    def __init__(self, parent: InterpLensing, transposed=False):
        self.parent = parent
        self.transposed = transposed

    def __repr__(self):
        return 'inv({}){}'.format(self.parent, '.T' if self.transposed else '')

    def apply(self, f):
        return self.parent.solve_adjoint(f) if self.transposed else self.parent.solve(f)

    def adjoint(self):
        return _InverseLensing(self.parent, not self.transposed)

    def solve(self, f):
        return self.parent.apply_adjoint(f) if self.transposed else self.parent.apply(f)

    def pinv(self):
        return self.parent.adjoint() if self.transposed else self.parent

    def hashdict(self):
        return {'type': 'inverse', 'transposed': self.transposed, 'op': self.parent.hashdict()}


def precompute(L, phi, f=None, proj: FlatProj = None):
    """Instantiates a lensing operator at phi, allocating a cache where L is a cache type.

    Args:
        L: the InterpLensing class, an InterpLensing instance used as template, IdentityOp,
            or any callable phi -> operator
        phi: example potential; its batch size (or that of f, if larger) sizes the buffers
        f: optional example field
        proj: FlatProj, needed when L is a class

    """
    nbatch = max(batch_length(phi), batch_length(f))
    if isinstance(L, IdentityOp):
        return L
    if isinstance(L, type) and issubclass(L, InterpLensing):
        if proj is None:
            raise ValueError('precompute of a lensing type needs a FlatProj')
        return L(proj, phi=_batched(phi, nbatch), nbatch=nbatch)
    if isinstance(L, InterpLensing):
        return InterpLensing(proj or L.proj, phi=_batched(phi, nbatch), nbatch=nbatch, order=L.order)
    return L(phi)


def reprecompute(L, phi):
    """Refreshes a cache in place (the returned operator aliases L), else re-instantiates."""
    if isinstance(L, InterpLensing):
        return L.refresh(phi)
    return L(phi)


def _batched(phi, nbatch):
    phi = np.asarray(phi)
    if nbatch > 1 and batch_length(phi) == 1:
        return batch(phi.reshape(phi.shape[-3:]), nbatch)
    return phi
