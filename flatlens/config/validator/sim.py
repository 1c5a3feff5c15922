import numpy as np
from flatlens.config.metamodel import DEFAULT_NotAValue

# if [], doesn't check for value
valid_value = {
    'pol': ['I', 'P', 'IP'],
    'dtype': [np.float32, np.float64],
}
# if [], doesn't check for bounds. One entry is a lower bound, two entries are (lower, upper)
valid_bound = {
    'theta_pix': [0.],
    'Nside': [2],
    'Nbatch': [1],
    'uK_arcmin_T': [0.],
    'ell_knee': [0.],
    'beam_fwhm': [0.],
    'Nphi_fac': [0.],
}


def _check_value(attribute, value):
    if valid_value.get(attribute.name, []) != [] and value not in valid_value[attribute.name]:
        raise ValueError('{} should be one of {}, got {}'.format(attribute.name, valid_value[attribute.name], value))


def _check_bound(attribute, value, strict=False):
    bounds = valid_bound.get(attribute.name, [])
    if bounds == []:
        return
    lower_ok = np.all(np.asarray(value) > bounds[0]) if strict else np.all(np.asarray(value) >= bounds[0])
    if not lower_ok:
        raise ValueError('{} must be {} {}, but is {}'.format(attribute.name, '>' if strict else '>=', bounds[0], value))
    if len(bounds) == 2 and not np.all(np.asarray(value) <= bounds[1]):
        raise ValueError('{} must be <= {}, but is {}'.format(attribute.name, bounds[1], value))


def theta_pix(instance, attribute, value):
    _check_bound(attribute, value, strict=True)


def Nside(instance, attribute, value):
    if np.ndim(value) not in (0, 1) or np.size(value) not in (1, 2):
        raise ValueError('Nside should be an int or a (Ny, Nx) pair, got {}'.format(value))
    _check_bound(attribute, value)


def pol(instance, attribute, value):
    _check_value(attribute, value)


def dtype(instance, attribute, value):
    _check_value(attribute, np.dtype(value).type)


def Nbatch(instance, attribute, value):
    if value is not None:
        _check_bound(attribute, value)


def uK_arcmin_T(instance, attribute, value):
    _check_bound(attribute, value)


def ell_knee(instance, attribute, value):
    if value is not None:
        _check_bound(attribute, value)


def beam_fwhm(instance, attribute, value):
    _check_bound(attribute, value)


def Nphi_fac(instance, attribute, value):
    _check_bound(attribute, value, strict=True)


def seed(instance, attribute, value):
    if np.all(value != DEFAULT_NotAValue) and value is not None and not isinstance(value, (int, np.integer)):
        raise ValueError('seed should be an integer or None, got {}'.format(value))
