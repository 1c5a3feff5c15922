"""flatlens: flat-sky CMB lensing datasets, forward models and their Gaussian log-densities."""

import logging
log = logging.getLogger(__name__)

from flatlens.core.geometry import FlatProj
from flatlens.core.operator import LinearOp, IdentityOp, FourierOp, PixelOp, pinv, logdet, sqrtm, diag
from flatlens.core.param_operator import ParamDependentOp, ConstantParamOp, evaluate
from flatlens.core.gaussian import simulate_gaussian, gaussian_logpdf
from flatlens.core.lensing import InterpLensing, precompute, reprecompute
from flatlens.core.dataset import DataSet, NoLensingDataSet, BaseDataSet, Mixed, gradientf_logpdf, mix, unmix
from flatlens.core.preconditioner import hessian_logpdf_preconditioner, argmaxf_logpdf
from flatlens.core.distributed import DistributedRegistry
from flatlens.sims.load_sim import load_sim, load_nolensing_sim
