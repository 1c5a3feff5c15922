"""Operators which depend on named parameters.

A ParamDependentOp is evaluated as `op(theta)` or `op(**theta)` and returns a
concrete LinearOp. With no parameters the fiducial operator is returned. The
fiducial values are the keyword defaults of the wrapped function, e.g.::

    Cf = ParamDependentOp(lambda r=r0, **_: Cfs + (r / r0) * Cft)
    Cf()          # fiducial, r=r0
    Cf(r=0.1)     # at r=0.1
    Cf({'r': 0.1, 'Aphi': 1.1})   # unknown parameters are ignored by **_
"""

import hashlib
import inspect
import types

import logging
log = logging.getLogger(__name__)

import numpy as np

from flatlens.core.operator import LinearOp
from flatlens.utils import dict_hash, npy_hash


def value_hashdict(value, _seen=None):
    """Structural identity of an operator field value, closures and callables included."""
    if value is None:
        return None
    if isinstance(value, np.ndarray):
        return npy_hash(value)
    if isinstance(value, LinearOp):
        return value.hashdict()
    if isinstance(value, types.CodeType):
        return _code_hashdict(value)
    if isinstance(value, type):
        return '{}.{}'.format(value.__module__, value.__qualname__)
    if callable(value):
        return func_hashdict(value, _seen)
    return repr(value)


def _code_hashdict(code):
    return {'code': hashlib.sha1(code.co_code).hexdigest(), 'names': list(code.co_names),
            'consts': [value_hashdict(c) for c in code.co_consts]}


def func_hashdict(func, _seen=None):
    """Identity of a function: its bytecode, constants, defaults and the values it closes over.

    Functions with the same body, defaults and captured values get the same hashdict
    wherever they were defined. Callables without bytecode fall back to their name.
    """
    name = '{}.{}'.format(getattr(func, '__module__', ''), getattr(func, '__qualname__', type(func).__name__))
    code = getattr(func, '__code__', None)
    if code is None:
        return name
    _seen = set() if _seen is None else _seen
    if id(func) in _seen:
        return name
    _seen.add(id(func))
    closure = []
    for cell in (func.__closure__ or ()):
        try:
            closure.append(value_hashdict(cell.cell_contents, _seen))
        except ValueError:  # empty cell
            closure.append(None)
    return {'code': _code_hashdict(code),
            'defaults': [value_hashdict(v, _seen) for v in (func.__defaults__ or ())],
            'kwdefaults': {k: value_hashdict(v, _seen) for k, v in (func.__kwdefaults__ or {}).items()},
            'closure': closure}


def _merge_theta(theta, kwtheta):
    merged = dict(theta or {})
    merged.update(kwtheta)
    return merged


class ParamDependentOp(LinearOp):
    """Operator-valued function of parameters.

    Args:
        func: callable returning a LinearOp, taking parameters as keyword arguments.
            Its keyword defaults are the fiducial parameter values; it should
            accept `**_` so that it can be handed the full parameter set.

    Note:
        The fiducial operator is built once here. Where the returned object is a
        plain LinearOp, a ParamDependentOp behaves like its fiducial operator in
        arithmetic and application.
    """
    def __init__(self, func):
        self.func = func
        self.op = func()

    def __repr__(self):
        return 'ParamDependentOp({}; fiducial={})'.format(getattr(self.func, '__qualname__', self.func), self.fiducial)

    @property
    def fiducial(self):
        """Declared fiducial parameter values."""
        return {name: p.default for name, p in inspect.signature(self.func).parameters.items()
                if p.default is not inspect.Parameter.empty}

    def evaluate(self, theta):
        if not theta:
            return self.op
        return self.func(**theta)

    def __call__(self, theta=None, **kwtheta):
        return self.evaluate(_merge_theta(theta, kwtheta))

    def apply(self, f):
        return self.op.apply(f)

    def adjoint(self):
        return self.op.adjoint()

    def solve(self, f):
        return self.op.solve(f)

    def pinv(self):
        return self.op.pinv()

    def logdet(self):
        return self.op.logdet()

    def sqrtm(self):
        return self.op.sqrtm()

    def diag(self):
        return self.op.diag()

    def scale(self, s):
        return self.op.scale(s)

    def hashdict(self):
        return {'type': 'ParamDependentOp',
                'func': dict_hash(func_hashdict(self.func)),
                'fiducial': {k: repr(v) for k, v in self.fiducial.items()},
                'op': self.op.hashdict()}


class ConstantParamOp(ParamDependentOp):
    """Wraps a fixed operator; every parameter set yields that operator."""
    def __init__(self, op: LinearOp):
        self.func = lambda **_: op
        self.op = op

    def __repr__(self):
        return 'ConstantParamOp({})'.format(self.op)

    @property
    def fiducial(self):
        return {}

    def evaluate(self, theta):
        return self.op

    def hashdict(self):
        return {'type': 'ConstantParamOp', 'op': self.op.hashdict()}


def evaluate(op, theta=None):
    """Evaluates parameter-dependent operators at theta, passes anything else through."""
    if isinstance(op, ParamDependentOp):
        return op(theta)
    return op
