import os

import logging
log = logging.getLogger(__name__)

import numpy as np

from flatlens.utils import dict_hash


class cacher(object):
    def cache(self, fn, obj):
        assert 0
    def load(self, fn):
        assert 0
    def is_cached(self, fn):
        assert 0
    def remove(self, fn):
        assert 0


class cacher_npy(cacher):
    """Stores arrays as lib_dir/<fn>.npy."""
    def __init__(self, lib_dir, verbose=False):
        if not os.path.exists(lib_dir):
            os.makedirs(lib_dir)
        self.lib_dir = lib_dir
        self.verbose = verbose

    def _path(self, fn):
        return os.path.join(self.lib_dir, fn + '.npy')

    def cache(self, fn, obj):
        assert '.npy' not in fn
        np.save(self._path(fn), obj)
        if self.verbose: log.info("Cached " + fn + '.npy')

    def load(self, fn):
        assert '.npy' not in fn
        p = self._path(fn)
        assert os.path.exists(p), p
        if self.verbose: log.info("Loading " + fn + '.npy')
        return np.load(p)

    def is_cached(self, fn):
        return os.path.exists(self._path(fn))

    def remove(self, fn):
        assert self.is_cached(fn)
        os.remove(self._path(fn))

    def cache_hashdict(self, fn, hashdict):
        """Stores the sha1 of a hashdict, or checks it against the stored one."""
        p = os.path.join(self.lib_dir, fn + '.sha1')
        h = dict_hash(hashdict)
        if os.path.exists(p):
            with open(p) as f:
                stored = f.read().strip()
            if stored != h:
                raise ValueError('{} holds outputs of a different configuration ({} vs {})'.format(self.lib_dir, stored, h))
        else:
            with open(p, 'w') as f:
                f.write(h)
        return h


class cacher_mem(cacher):
    def __init__(self):
        self._cache = dict()

    def cache(self, fn, obj):
        self._cache[fn] = np.copy(obj)

    def load(self, fn):
        assert fn in self._cache.keys()
        return np.copy(self._cache[fn])

    def is_cached(self, fn):
        return fn in self._cache.keys()

    def remove(self, fn):
        assert fn in self._cache.keys()
        del self._cache[fn]
