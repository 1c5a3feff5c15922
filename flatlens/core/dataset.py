"""DataSets: covariances, masks, beams and lensing operator bundled with their forward model.

Two variants share the same field set (`ObservationFields`):

    NoLensingDataSet:   f ~ N(0, Cf),  d ~ N(M B f, Cn)
    BaseDataSet:        f ~ N(0, Cf),  phi ~ N(0, Cphi),  f_lensed = L(phi) f,  d ~ N(M B f_lensed, Cn)

Every operator field may be a ParamDependentOp; `theta` selects where it is evaluated,
an empty `theta` selecting the fiducial operators. Fields ending in `_hat` are
approximations used for preconditioning only. They are assumed diagonal in the basis
of `Cf`; nothing checks this.

Mixing (`mix`, `unmix`, `Mixed`) reparametrizes (f, phi) to
(f_mix, phi_mix) = (L(phi) D f, G phi).
"""

import abc
import copy
import zlib

import logging
log = logging.getLogger(__name__)
from logdecorator import log_on_start, log_on_end

import attr
import numpy as np

from flatlens.core.gaussian import gaussian_logpdf, simulate_gaussian
from flatlens.core.lensing import InterpLensing, precompute, reprecompute
from flatlens.core.operator import IdentityOp, FourierOp, PixelOp, logdet
from flatlens.core.param_operator import ParamDependentOp, evaluate, value_hashdict
from flatlens.utils import batch_length, dict_hash


def _zero_logprior(**theta):
    return 0.


def _child_rng(entropy, name):
    return np.random.default_rng([entropy, zlib.crc32(name.encode())])


class DataSet(abc.ABC):
    """Forward-model interface common to all DataSet variants.

    Equality is structural: two DataSets compare equal when `structural_hash` agrees.
    DataSets are mutable, hence unhashable.
    """
    latent_names = ()

    @abc.abstractmethod
    def logpdf(self, *latents, theta=None, d=None):
        """Joint log-density of latents and data, plus the parameter prior."""

    @abc.abstractmethod
    def simulate(self, rng=None, seed=None, theta=None, nbatch=None, **fixed):
        """Draws latents not in `fixed`, then data."""

    def __repr__(self):
        return '{}({})'.format(type(self).__name__, ', '.join(a.name for a in attr.fields(type(self))))

    def __eq__(self, other):
        if not isinstance(other, DataSet):
            return NotImplemented
        return self.structural_hash() == other.structural_hash()

    __hash__ = None

    def hashdict(self):
        return {'type': type(self).__name__,
                'fields': [[a.name, value_hashdict(getattr(self, a.name))] for a in attr.fields(type(self))]}

    def structural_hash(self):
        """sha1 over the type name and the ordered field values; stable across processes."""
        return dict_hash(self.hashdict())

    def copy(self):
        """Shallow copy; operators are shared, except a lensing cache which is copied."""
        changes = {}
        L = getattr(self, 'L', None)
        if isinstance(L, InterpLensing):
            changes['L'] = L.copy()
        return attr.evolve(self, **changes)

    def __copy__(self):
        return self.copy()

    def __call__(self, theta=None, **kwtheta):
        """New DataSet with every parameter-dependent operator evaluated at theta."""
        theta = dict(theta or {}, **kwtheta)
        ret = self.copy()
        for a in attr.fields(type(self)):
            value = getattr(ret, a.name)
            if isinstance(value, ParamDependentOp):
                setattr(ret, a.name, value(theta))
        return ret

    def at(self, **theta):
        return self(theta)

    def logprior_of(self, theta=None):
        return self.logprior(**(theta or {}))

    def _data(self, d):
        if d is None:
            d = self.d
        if d is None:
            raise ValueError('{} holds no data; simulate first or pass d'.format(type(self).__name__))
        return d

    def evaluated(self, theta, *names):
        return [evaluate(getattr(self, name), theta) for name in names]

    def _template(self, cov_name, ncomp=None):
        """Zero field shaped like a draw from the named covariance."""
        op = evaluate(getattr(self, cov_name))
        if isinstance(op, FourierOp):
            return np.zeros((op.ncomp,) + op.proj.shape, dtype=op.proj.dtype)
        if isinstance(op, PixelOp):
            return np.zeros(op.d.shape[-3:], dtype=op.d.dtype)
        if self.d is not None:
            d = np.asarray(self.d)
            shape = d.shape[-3:] if ncomp is None else (ncomp,) + d.shape[-2:]
            return np.zeros(shape, dtype=d.dtype)
        raise ValueError('cannot infer the field shape of {} from {}'.format(cov_name, op))

    def _rngs(self, rng, seed):
        if rng is None:
            rng = np.random.default_rng(seed)
        entropy = int(rng.integers(2 ** 63))
        return {name: _child_rng(entropy, name) for name in self.latent_names + ('d',)}


@attr.s(eq=False, repr=False, kw_only=True)
class ObservationFields:
    """Field set shared by the DataSet variants.

    Attributes:
        d: data, (ncomp, Ny, Nx) or batched (nbatch, ncomp, Ny, Nx); None before simulation
        Cf: field covariance
        Cn: noise covariance
        Cn_hat: approximate noise covariance, diagonal in the basis of Cf (default Cn)
        M: mask (default identity)
        M_hat: approximate mask, diagonal in the basis of Cf (default M)
        B: beam or transfer function (default identity)
        B_hat: approximate beam, diagonal in the basis of Cf (default B)
        logprior: callable of the parameters returning an additive log-prior
    """
    d =         attr.field(default=None)
    Cf =        attr.field()
    Cn =        attr.field()
    Cn_hat =    attr.field(default=attr.Factory(lambda self: self.Cn, takes_self=True))
    M =         attr.field(factory=IdentityOp)
    M_hat =     attr.field(default=attr.Factory(lambda self: self.M, takes_self=True))
    B =         attr.field(factory=IdentityOp)
    B_hat =     attr.field(default=attr.Factory(lambda self: self.B, takes_self=True))
    logprior =  attr.field(default=_zero_logprior)


@attr.s(eq=False, repr=False, kw_only=True)
class NoLensingDataSet(ObservationFields, DataSet):
    """f ~ N(0, Cf), d ~ N(M B f, Cn)."""
    latent_names = ('f',)

    def logpdf(self, f, theta=None, d=None):
        theta = theta or {}
        d = self._data(d)
        Cf, Cn, M, B = self.evaluated(theta, 'Cf', 'Cn', 'M', 'B')
        return (gaussian_logpdf(f, None, Cf)
                + gaussian_logpdf(d, M @ (B @ f), Cn)
                + self.logprior(**theta))

    @log_on_start(logging.DEBUG, "simulate: theta={theta}, nbatch={nbatch}", logger=log)
    @log_on_end(logging.DEBUG, "simulate done", logger=log)
    def simulate(self, rng=None, seed=None, theta=None, nbatch=None, **fixed):
        theta = dict(theta or {})
        rngs = self._rngs(rng, seed)
        if nbatch is None:
            nbatch = batch_length(self.d)
        Cf, Cn, M, B = self.evaluated(theta, 'Cf', 'Cn', 'M', 'B')
        f = fixed.get('f')
        if f is None:
            f = simulate_gaussian(rngs['f'], Cf, template=self._template('Cf'), nbatch=nbatch)
        mu = M @ (B @ f)
        d = fixed.get('d')
        if d is None:
            d = simulate_gaussian(rngs['d'], Cn, mean=mu, template=self._template('Cf'), nbatch=nbatch)
        return dict(f=f, d=d, theta=theta)


@attr.s(eq=False, repr=False, kw_only=True)
class BaseDataSet(ObservationFields, DataSet):
    """f ~ N(0, Cf), phi ~ N(0, Cphi), d ~ N(M B L(phi) f, Cn).

    Attributes:
        Cphi: lensing potential covariance
        Cf_lensed: lensed field covariance, optional (used by the quadratic estimator)
        D, G: field and potential mixing operators
        L: lensing operator; an InterpLensing cache, the InterpLensing type (allocated on first use),
            IdentityOp, or any callable phi -> operator
        Nphi: potential reconstruction noise, used for preconditioning
    """
    latent_names = ('f', 'phi')

    Cphi =      attr.field()
    Cf_lensed = attr.field(default=None)
    D =         attr.field(factory=IdentityOp)
    G =         attr.field(factory=IdentityOp)
    L =         attr.field(default=InterpLensing)
    Nphi =      attr.field(default=None)

    def _proj(self):
        for name in ('Cphi', 'Cf', 'Cn'):
            proj = getattr(evaluate(getattr(self, name)), 'proj', None)
            if proj is not None:
                return proj
        return None

    def lens(self, phi):
        """Lensing operator at phi.

        Refreshes the owned cache in place; the cache is (re)allocated when L is a type
        or when phi's batch size does not match the cache.
        """
        L = self.L
        if isinstance(L, type) or (isinstance(L, InterpLensing) and L.nbatch != batch_length(phi)):
            self.L = precompute(L, phi, proj=self._proj())
            return self.L
        return reprecompute(L, phi)

    def logpdf(self, f, phi, theta=None, d=None):
        theta = theta or {}
        d = self._data(d)
        Cf, Cphi, Cn, M, B = self.evaluated(theta, 'Cf', 'Cphi', 'Cn', 'M', 'B')
        f_lensed = self.lens(phi) @ f
        return (gaussian_logpdf(f, None, Cf)
                + gaussian_logpdf(phi, None, Cphi)
                + gaussian_logpdf(d, M @ (B @ f_lensed), Cn)
                + self.logprior(**theta))

    @log_on_start(logging.DEBUG, "simulate: theta={theta}, nbatch={nbatch}", logger=log)
    @log_on_end(logging.DEBUG, "simulate done", logger=log)
    def simulate(self, rng=None, seed=None, theta=None, nbatch=None, **fixed):
        theta = dict(theta or {})
        rngs = self._rngs(rng, seed)
        if nbatch is None:
            nbatch = batch_length(self.d)
        Cf, Cphi, Cn, M, B = self.evaluated(theta, 'Cf', 'Cphi', 'Cn', 'M', 'B')
        f = fixed.get('f')
        if f is None:
            f = simulate_gaussian(rngs['f'], Cf, template=self._template('Cf'), nbatch=nbatch)
        phi = fixed.get('phi')
        if phi is None:
            phi = simulate_gaussian(rngs['phi'], Cphi, template=self._template('Cphi', ncomp=1), nbatch=nbatch)
        f_lensed = fixed.get('f_lensed')
        if f_lensed is None:
            f_lensed = self.lens(phi) @ f
        mu = M @ (B @ f_lensed)
        d = fixed.get('d')
        if d is None:
            d = simulate_gaussian(rngs['d'], Cn, mean=mu, template=self._template('Cf'), nbatch=nbatch)
        return dict(f=f, phi=phi, f_lensed=f_lensed, d=d, theta=theta)


def gradientf_logpdf(ds: DataSet, f, phi=None, theta=None, d=None):
    """Gradient of `ds.logpdf` with respect to f at fixed phi and theta.

        L^t B^t M^t Cn^+ (d - M B L f) - Cf^+ f

    with L the identity for NoLensingDataSet.
    """
    theta = theta or {}
    d = ds._data(d)
    Cf, Cn, M, B = ds.evaluated(theta, 'Cf', 'Cn', 'M', 'B')
    L = ds.lens(phi) if isinstance(ds, BaseDataSet) else IdentityOp()
    r = Cn.pinv() @ (d - M @ (B @ (L @ f)))
    return L.T @ (B.T @ (M.T @ r)) - Cf.pinv() @ f


def mix(ds: BaseDataSet, f, phi, theta=None, **rest):
    """(f, phi) -> (f_mix, phi_mix) = (L(phi) D(theta) f, G(theta) phi)."""
    theta = theta or {}
    D, G = ds.evaluated(theta, 'D', 'G')
    f_mix = ds.lens(phi) @ (D @ f)
    phi_mix = G @ phi
    return dict(f_mix=f_mix, phi_mix=phi_mix, theta=theta, **rest)


def unmix(ds: BaseDataSet, f_mix, phi_mix, theta=None, **rest):
    """Inverse of `mix`."""
    theta = theta or {}
    D, G = ds.evaluated(theta, 'D', 'G')
    phi = G.solve(phi_mix)
    f = D.solve(ds.lens(phi).solve(f_mix))
    return dict(f=f, phi=phi, theta=theta, **rest)


@attr.s(frozen=True, eq=False)
class Mixed:
    """DataSet wrapper whose latents are the mixed (f_mix, phi_mix)."""
    ds = attr.field(validator=attr.validators.instance_of(BaseDataSet))

    latent_names = ('f_mix', 'phi_mix')

    def logpdf(self, f_mix, phi_mix, theta=None, d=None):
        theta = theta or {}
        x = unmix(self.ds, f_mix, phi_mix, theta)
        return (self.ds.logpdf(x['f'], x['phi'], theta=theta, d=d)
                - logdet(self.ds.D, theta)
                - logdet(self.ds.G, theta))

    def simulate(self, rng=None, seed=None, theta=None, nbatch=None, **fixed):
        sim = self.ds.simulate(rng=rng, seed=seed, theta=theta, nbatch=nbatch, **fixed)
        return mix(self.ds, **sim)
