"""Linear operators acting on flat-sky fields.

Operators compose with `@`, add with `+`, scale with scalars, and expose the
adjoint as `.T`. Operators diagonal in the same basis collapse into a single
operator of that kind; anything else is kept as a lazy product or sum.

Field arrays have shape (ncomp, Ny, Nx), optionally with a leading batch axis.
"""

import logging
log = logging.getLogger(__name__)

import numpy as np

from flatlens.core.geometry import FlatProj, POL_COMPONENTS
from flatlens.utils import cli, npy_hash


class LinearOp:
    """Base type of all operators.

    Plain operators do not depend on parameters: calling one with any arguments
    returns the operator itself. This also makes `IdentityOp()` usable where a
    lensing operator `L(phi)` is expected.
    """
    __array_ufunc__ = None

    def __call__(self, *args, **kwargs):
        return self

    def apply(self, f):
        raise NotImplementedError(type(self).__name__)

    def adjoint(self):
        raise NotImplementedError(type(self).__name__)

    def solve(self, f):
        return self.pinv().apply(f)

    def pinv(self):
        raise NotImplementedError('pinv not available for {}'.format(type(self).__name__))

    def logdet(self):
        raise NotImplementedError('logdet not available for {}'.format(type(self).__name__))

    def sqrtm(self):
        raise NotImplementedError('sqrtm not available for {}'.format(type(self).__name__))

    def diag(self):
        raise NotImplementedError('diag not available for {}'.format(type(self).__name__))

    def adapt(self, storage):
        return self

    def hashdict(self):
        return {'type': type(self).__name__}

    @property
    def T(self):
        return self.adjoint()

    def __matmul__(self, other):
        if isinstance(other, LinearOp):
            return compose(self, other)
        return self.apply(np.asarray(other))

    def __add__(self, other):
        if isinstance(other, LinearOp):
            return add(self, other)
        if np.isscalar(other):
            return add(self, IdentityOp(other))
        return NotImplemented

    def __radd__(self, other):
        return self.__add__(other)

    def __sub__(self, other):
        return self + (-1.) * other

    def __neg__(self):
        return (-1.) * self

    def __mul__(self, other):
        if np.isscalar(other):
            return self.scale(other)
        return NotImplemented

    def __rmul__(self, other):
        return self.__mul__(other)

    def __truediv__(self, other):
        if np.isscalar(other):
            return self.scale(1. / other)
        return NotImplemented

    def scale(self, s):
        return ProductOp([IdentityOp(s), self])


class IdentityOp(LinearOp):
    """Uniform scaling `scale * I`, dimension-free."""
    def __init__(self, scale=1.):
        self.s = float(scale)

    def __repr__(self):
        return 'IdentityOp({})'.format(self.s) if self.s != 1. else 'IdentityOp()'

    def apply(self, f):
        return f if self.s == 1. else self.s * f

    def adjoint(self):
        return self

    def solve(self, f):
        return self.pinv().apply(f)

    def pinv(self):
        return IdentityOp(0. if self.s == 0. else 1. / self.s)

    def logdet(self):
        if self.s == 1.:
            return 0.
        raise NotImplementedError('logdet of a scaled identity needs a field dimension')

    def sqrtm(self):
        return IdentityOp(np.sqrt(self.s))

    def scale(self, s):
        return IdentityOp(self.s * s)

    def hashdict(self):
        return {'type': 'IdentityOp', 'scale': self.s}


class FourierOp(LinearOp):
    """Operator block-diagonal in the harmonic (T, E, B) basis of the real FFT.

    Args:
        proj: FlatProj of the fields it acts on
        mat: per-mode matrices, shape (Ny, Nx//2+1, n, n)
        pol: 'I', 'P' or 'IP'

    Note:
        Real, mode-wise symmetric matrices give self-adjoint operators. Covariances
        built from spectra have entries Cl / pixel_area in this basis.
    """
    def __init__(self, proj: FlatProj, mat, pol='I'):
        if pol not in POL_COMPONENTS:
            raise ValueError("pol should be one of {}, got {}".format(list(POL_COMPONENTS), pol))
        n = len(POL_COMPONENTS[pol])
        mat = np.asarray(mat, dtype=float)
        assert mat.shape == proj.fshape + (n, n), (mat.shape, proj.fshape, n)
        self.proj = proj
        self.mat = mat
        self.pol = pol

    @classmethod
    def from_diag(cls, proj, diag, pol='I'):
        """Builds the operator from its harmonic-basis diagonal of shape (n, Ny, Nx//2+1)."""
        diag = np.asarray(diag, dtype=float)
        n = diag.shape[0]
        mat = np.zeros(proj.fshape + (n, n))
        for i in range(n):
            mat[..., i, i] = diag[i]
        return cls(proj, mat, pol)

    def __repr__(self):
        return 'FourierOp(pol={}, shape={})'.format(self.pol, self.mat.shape)

    @property
    def ncomp(self):
        return self.mat.shape[-1]

    def is_diagonal(self):
        off = self.mat.copy()
        idx = np.arange(self.ncomp)
        off[..., idx, idx] = 0.
        return not np.any(off)

    def _check(self, other):
        if other.pol != self.pol or other.proj != self.proj:
            raise ValueError('incompatible FourierOps: {} vs {}'.format(self, other))

    def apply(self, f):
        f = np.asarray(f)
        fk = self.proj.map2harmonic(f, self.pol)
        fk = np.einsum('yxij,...jyx->...iyx', self.mat, fk)
        ret = self.proj.harmonic2map(fk, self.pol)
        return ret.astype(f.dtype, copy=False) if np.issubdtype(f.dtype, np.floating) else ret

    def adjoint(self):
        return FourierOp(self.proj, np.swapaxes(self.mat, -1, -2), self.pol)

    def pinv(self):
        if self.is_diagonal():
            return FourierOp.from_diag(self.proj, cli(self.diag()), self.pol)
        return FourierOp(self.proj, np.linalg.pinv(self.mat), self.pol)

    def logdet(self):
        """Pseudo-log-determinant: log|eigenvalues| summed over non-zero eigenvalues."""
        if self.is_diagonal():
            w = np.abs(np.moveaxis(self.diag(), 0, -1))
        else:
            w = np.abs(np.linalg.eigvals(self.mat))
        tol = np.max(w, axis=-1, keepdims=True) * self.ncomp * np.finfo(float).eps
        logw = np.where(w > tol, np.log(np.where(w > tol, w, 1.)), 0.)
        return float(np.sum(self.proj.rfft_multiplicity[..., None] * logw))

    def sqrtm(self):
        if self.is_diagonal():
            return FourierOp.from_diag(self.proj, np.sqrt(np.maximum(self.diag(), 0.)), self.pol)
        if np.allclose(self.mat, np.swapaxes(self.mat, -1, -2)):
            w, v = np.linalg.eigh(self.mat)
            mat = np.einsum('...ij,...j,...kj->...ik', v, np.sqrt(np.maximum(w, 0.)), v)
        else:
            w, v = np.linalg.eig(self.mat)
            sqrtw = np.sqrt(w.astype(complex))
            mat = np.real(np.einsum('...ij,...j,...jk->...ik', v, sqrtw, np.linalg.pinv(v)))
        return FourierOp(self.proj, mat, self.pol)

    def diag(self):
        return np.moveaxis(np.diagonal(self.mat, axis1=-2, axis2=-1), -1, 0).copy()

    def scale(self, s):
        return FourierOp(self.proj, s * self.mat, self.pol)

    def adapt(self, storage):
        return FourierOp(self.proj, storage(self.mat), self.pol)

    def hashdict(self):
        return {'type': 'FourierOp', 'proj': self.proj.hashdict(), 'pol': self.pol, 'mat': npy_hash(self.mat)}


class PixelOp(LinearOp):
    """Operator diagonal in map space, e.g. a pixel mask.

    Args:
        proj: FlatProj of the fields it acts on
        diag: array of shape (ncomp, Ny, Nx)
    """
    def __init__(self, proj: FlatProj, diag):
        diag = np.asarray(diag)
        assert diag.shape[-2:] == proj.shape, (diag.shape, proj.shape)
        self.proj = proj
        self.d = diag

    def __repr__(self):
        return 'PixelOp(shape={})'.format(self.d.shape)

    def apply(self, f):
        f = np.asarray(f)
        return (self.d * f).astype(f.dtype, copy=False)

    def adjoint(self):
        return self

    def pinv(self):
        return PixelOp(self.proj, cli(self.d))

    def logdet(self):
        w = np.abs(self.d)
        return float(np.sum(np.log(w[w > 0])))

    def sqrtm(self):
        return PixelOp(self.proj, np.sqrt(self.d))

    def diag(self):
        return self.d.copy()

    def scale(self, s):
        return PixelOp(self.proj, s * self.d)

    def adapt(self, storage):
        return PixelOp(self.proj, storage(self.d))

    def hashdict(self):
        return {'type': 'PixelOp', 'proj': self.proj.hashdict(), 'diag': npy_hash(self.d)}


class ProductOp(LinearOp):
    """Lazy product, applied right to left."""
    def __init__(self, ops):
        self.ops = list(ops)

    def __repr__(self):
        return ' @ '.join(repr(op) for op in self.ops)

    def apply(self, f):
        for op in self.ops[::-1]:
            f = op.apply(f)
        return f

    def adjoint(self):
        return ProductOp([op.adjoint() for op in self.ops[::-1]])

    def solve(self, f):
        for op in self.ops:
            f = op.solve(f)
        return f

    def pinv(self):
        return ProductOp([op.pinv() for op in self.ops[::-1]])

    def logdet(self):
        return sum(op.logdet() for op in self.ops)

    def adapt(self, storage):
        return ProductOp([op.adapt(storage) for op in self.ops])

    def hashdict(self):
        return {'type': 'ProductOp', 'ops': [op.hashdict() for op in self.ops]}


class SumOp(LinearOp):
    """Lazy sum."""
    def __init__(self, ops):
        self.ops = list(ops)

    def __repr__(self):
        return ' + '.join(repr(op) for op in self.ops)

    def apply(self, f):
        return sum(op.apply(f) for op in self.ops)

    def adjoint(self):
        return SumOp([op.adjoint() for op in self.ops])

    def scale(self, s):
        return SumOp([op.scale(s) for op in self.ops])

    def adapt(self, storage):
        return SumOp([op.adapt(storage) for op in self.ops])

    def hashdict(self):
        return {'type': 'SumOp', 'ops': [op.hashdict() for op in self.ops]}


def compose(a: LinearOp, b: LinearOp):
    if isinstance(a, IdentityOp):
        return b if a.s == 1. else b.scale(a.s)
    if isinstance(b, IdentityOp):
        return a if b.s == 1. else a.scale(b.s)
    if isinstance(a, FourierOp) and isinstance(b, FourierOp):
        a._check(b)
        return FourierOp(a.proj, np.matmul(a.mat, b.mat), a.pol)
    if isinstance(a, PixelOp) and isinstance(b, PixelOp):
        return PixelOp(a.proj, a.d * b.d)
    ops_a = a.ops if isinstance(a, ProductOp) else [a]
    ops_b = b.ops if isinstance(b, ProductOp) else [b]
    return ProductOp(ops_a + ops_b)


def add(a: LinearOp, b: LinearOp):
    if isinstance(a, IdentityOp) and isinstance(b, IdentityOp):
        return IdentityOp(a.s + b.s)
    if isinstance(a, IdentityOp):
        a, b = b, a
    if isinstance(a, FourierOp) and isinstance(b, IdentityOp):
        return FourierOp(a.proj, a.mat + b.s * np.eye(a.ncomp), a.pol)
    if isinstance(a, PixelOp) and isinstance(b, IdentityOp):
        return PixelOp(a.proj, a.d + b.s)
    if isinstance(a, FourierOp) and isinstance(b, FourierOp):
        a._check(b)
        return FourierOp(a.proj, a.mat + b.mat, a.pol)
    if isinstance(a, PixelOp) and isinstance(b, PixelOp):
        return PixelOp(a.proj, a.d + b.d)
    ops_a = a.ops if isinstance(a, SumOp) else [a]
    ops_b = b.ops if isinstance(b, SumOp) else [b]
    return SumOp(ops_a + ops_b)


def pinv(op: LinearOp):
    return op.pinv()


def logdet(op: LinearOp, *theta, **kwtheta):
    """log|det| of an operator, evaluated at parameters first if it depends on them."""
    return op(*theta, **kwtheta).logdet()


def sqrtm(op: LinearOp):
    return op.sqrtm()


def diag(op: LinearOp):
    return op.diag()
