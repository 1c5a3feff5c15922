from __future__ import annotations

import hashlib
import json
from time import time

import numpy as np


class timer:
    def __init__(self, verbose, prefix=''):
        self.t0 = time()
        self.ti = self.t0
        self.verbose = verbose
        self.prefix = prefix
        self.keys = {}

    def __str__(self):
        if len(self.keys) == 0:
            return r""
        s = ""
        for k in self.keys:
            dt = self.keys[k]
            dm = np.floor(dt / 60.)
            ds = np.floor(np.mod(dt, 60))
            dms = 1000 * np.mod(dt, 1.)
            s += "%40s:  [" % k + ('%02dm:%02ds:%03dms' % (dm, ds, dms)) + "] " + "\n"
        dt = time() - self.ti
        dm = np.floor(dt / 60.)
        ds = np.floor(np.mod(dt, 60))
        dms = 1000 * np.mod(dt, 1.)
        s += "%45s :  [" % (self.prefix + ' Total') + ('%02dm:%02ds:%03dms' % (dm, ds, dms)) + "] "
        return s

    def add(self, label):
        if label not in self.keys:
            self.keys[label] = 0.
        t0 = time()
        self.keys[label] += t0 - self.t0
        self.t0 = t0


def cli(cl):
    """Pseudo-inverse for positive cl-arrays.

    """
    ret = np.zeros_like(cl)
    ret[np.where(cl > 0)] = 1. / cl[np.where(cl > 0)]
    return ret


def extend_cl(cl, lmax):
    """Forces input to an array of size lmax + 1

    """
    if np.isscalar(cl):
        return np.ones(lmax + 1, dtype=float) * cl
    ret = np.zeros(lmax + 1, dtype=float)
    ret[:min(len(cl), lmax + 1)] = np.copy(cl[:min(len(cl), lmax + 1)])
    return ret


def clhash(cl, dtype=np.float32):
    """Hash for generic numpy array.

    By default we avoid here double precision checks since this might be machine dependent.

    """
    return hashlib.sha1(np.copy(np.asarray(cl).astype(dtype), order='C')).hexdigest()


def npy_hash(arr):
    """Exact hash of a numpy array, including its shape and dtype.

    """
    arr = np.ascontiguousarray(arr)
    h = hashlib.sha1(arr.view(np.uint8) if arr.size else b'')
    h.update(str((arr.shape, arr.dtype.str)).encode())
    return h.hexdigest()


def dict_hash(hashdict):
    """sha1 of a (nested) hashdict, stable across processes.

    """
    return hashlib.sha1(json.dumps(hashdict, sort_keys=True, default=str).encode()).hexdigest()


def batch_length(x):
    """Number of stacked realizations in a field array, 1 if unbatched.

    """
    if x is None:
        return 1
    return x.shape[0] if np.ndim(x) == 4 else 1


def batch(x, nbatch):
    """Repeats an unbatched field along a new leading batch axis.

    """
    assert np.ndim(x) == 3, np.shape(x)
    return np.repeat(x[None], nbatch, axis=0)


def fdot(x, y):
    """Real-space inner product of two fields, one value per batch element.

    """
    prod = np.asarray(x) * np.asarray(y)
    if prod.ndim == 4:
        return np.sum(prod, axis=(1, 2, 3))
    return np.sum(prod)


def camb_clfile(fname, lmax=None):
    """CAMB spectra (lenspotentialCls, lensedCls or tensCls types) returned as a dict of numpy arrays.

    Args:
        fname (str): path to CAMB output file
        lmax (int, optional): outputs cls truncated at this multipole.

    """
    cols = np.loadtxt(fname).transpose()
    ell = np.int_(cols[0])
    if lmax is None: lmax = ell[-1]
    assert ell[-1] >= lmax, (ell[-1], lmax)
    cls = {k: np.zeros(lmax + 1, dtype=float) for k in ['tt', 'ee', 'bb', 'te']}
    w = ell * (ell + 1) / (2. * np.pi)  # weights in output file
    idc = np.where(ell <= lmax)
    for i, k in enumerate(['tt', 'ee', 'bb', 'te']):
        cls[k][ell[idc]] = cols[i + 1][idc] / w[idc]
    if len(cols) > 5:
        wpp = lambda ell: ell ** 2 * (ell + 1) ** 2 / (2. * np.pi)
        cls['pp'] = np.zeros(lmax + 1, dtype=float)
        cls['pp'][ell[idc]] = cols[5][idc] / wpp(ell[idc])
    return cls
