"""Identity registry for sending DataSets by name instead of by value.

A `DistributedRegistry` maps names to structural hashes of DataSets held in its
`namespace`, the mapping a receiving process uses to resolve names. When pickling
through `RegistryPickler`, a DataSet whose structural hash matches a registered
one is replaced by its name; `RegistryUnpickler` resolves the name back to the
namespace copy. A registered DataSet mutated after registration, or a namespace
copy that no longer matches, raises `DistributedMismatchError` instead of silently
shipping stale or full data.

Example::

    with DistributedRegistry() as registry:
        registry.register('ds', ds)
        payload = dumps({'ds': ds, 'seed': 1}, registry)   # ds goes by name
        obj = loads(payload, registry)
"""

import io
import pickle

import logging
log = logging.getLogger(__name__)

from flatlens.config.etc.errorhandler import DistributedMismatchError
from flatlens.core.dataset import DataSet

_PID_TAG = 'flatlens.DataSet'


class DistributedRegistry:
    """Bidirectional name <-> structural hash registry with an explicit lifecycle.

    Args:
        namespace: mapping name -> DataSet resolved on the receiving side; defaults to a new dict
            populated by `register`

    """
    def __init__(self, namespace=None):
        self.namespace = {} if namespace is None else namespace
        self._name2hash = {}
        self._hash2name = {}
        self._id2hash = {}
        self._objects = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.clear()
        return False

    def __contains__(self, name):
        return self.is_registered(name)

    def register(self, name, ds: DataSet, remote_hashes=None):
        """Registers ds under name, replacing any previous registration.

        Args:
            name: logical name
            ds: DataSet
            remote_hashes: optional mapping worker id -> structural hash of that worker's copy of name

        Returns:
            the structural hash of ds

        """
        h = ds.structural_hash()
        for worker, remote_hash in (remote_hashes or {}).items():
            if remote_hash != h:
                raise DistributedMismatchError("worker {} holds a different '{}' (hash {} vs local {})".format(worker, name, remote_hash, h))
        if self.is_registered(name):
            self.unregister(name)
        self._name2hash[name] = h
        self._hash2name[h] = name
        self._id2hash[id(ds)] = h
        self._objects[name] = ds
        self.namespace[name] = ds
        log.info("registered '{}' ({})".format(name, h))
        return h

    def unregister(self, name):
        h = self._name2hash.pop(name)
        if self._hash2name.get(h) == name:
            del self._hash2name[h]
        ds = self._objects.pop(name)
        self._id2hash.pop(id(ds), None)
        self.namespace.pop(name, None)
        log.info("unregistered '{}'".format(name))

    def clear(self):
        for name in list(self._name2hash):
            self.unregister(name)

    def is_registered(self, name):
        return name in self._name2hash

    def name_for(self, ds: DataSet):
        """Name under which ds (or an equal DataSet) is registered, None otherwise."""
        h = self._id2hash.get(id(ds))
        if h is None:
            h = ds.structural_hash()
        return self._hash2name.get(h)

    def reference_for(self, ds: DataSet):
        """Name to send in place of ds, or None when ds must be sent by value."""
        h = ds.structural_hash()
        registered_hash = self._id2hash.get(id(ds))
        if registered_hash is not None:
            name = self._hash2name.get(registered_hash)
            if h != registered_hash:
                raise DistributedMismatchError("'{}' was modified after registration (hash {} vs registered {})".format(name, h, registered_hash))
        else:
            name = self._hash2name.get(h)
            if name is None:
                return None
        held = self.namespace.get(name)
        if held is None or held.structural_hash() != self._name2hash[name]:
            raise DistributedMismatchError("namespace copy of '{}' no longer matches its registered hash".format(name))
        return name

    def resolve(self, name):
        if name not in self.namespace:
            raise DistributedMismatchError("'{}' is not available in this namespace".format(name))
        return self.namespace[name]


class RegistryPickler(pickle.Pickler):
    """Pickler replacing registered DataSets by a name reference."""
    def __init__(self, file, registry: DistributedRegistry, protocol=None):
        super().__init__(file, protocol)
        self.registry = registry

    def persistent_id(self, obj):
        if isinstance(obj, DataSet):
            name = self.registry.reference_for(obj)
            if name is not None:
                log.debug("sending '{}' by reference".format(name))
                return (_PID_TAG, name)
        return None


class RegistryUnpickler(pickle.Unpickler):
    def __init__(self, file, registry: DistributedRegistry):
        super().__init__(file)
        self.registry = registry

    def persistent_load(self, pid):
        tag, name = pid
        if tag != _PID_TAG:
            raise pickle.UnpicklingError('unsupported persistent id {}'.format(pid))
        return self.registry.resolve(name)


def dumps(obj, registry: DistributedRegistry, protocol=None):
    buf = io.BytesIO()
    RegistryPickler(buf, registry, protocol).dump(obj)
    return buf.getvalue()


def loads(data, registry: DistributedRegistry):
    return RegistryUnpickler(io.BytesIO(data), registry).load()
