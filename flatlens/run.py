#!/usr/bin/env python

"""run.py: Entry point for building simulated flat-sky lensing datasets.

    python -m flatlens.run -t 2 -n 64 -p P --seed 1 -o outdir
"""

import os
import argparse
import traceback

import logging
log = logging.getLogger(__name__)

from flatlens.config.etc.logger import set_logging_level
from flatlens.core.cachers import cacher_npy
from flatlens.core.preconditioner import argmaxf_logpdf
from flatlens.sims.cls import ClSpectra
from flatlens.sims.load_sim import load_sim
from flatlens.sims.masks import LowPass


class run():
    """Entry point for the interactive mode.

    Builds the simulation once, and stores f, phi and d (and optionally the Wiener-filtered field) in `outdir`.
    """
    def __init__(self, outdir, verbose=False, **sim_kwargs):
        set_logging_level(verbose=verbose)
        self.outdir = outdir
        self.sim_kwargs = sim_kwargs
        self.cacher = cacher_npy(outdir)
        self.sim = None

    def hashdict(self):
        ret = {k: repr(v) for k, v in self.sim_kwargs.items() if k != 'Cl'}
        if self.sim_kwargs.get('Cl') is not None:
            ret['Cl'] = self.sim_kwargs['Cl'].hashdict()
        return ret

    def collect_model(self):
        if self.sim is None:
            self.cacher.cache_hashdict('sim', self.hashdict())
            self.sim = load_sim(**self.sim_kwargs)
        return self.sim

    def run(self, wiener_filter=False):
        sim = self.collect_model()
        for key in ['f', 'f_lensed', 'phi', 'd']:
            if not self.cacher.is_cached(key):
                self.cacher.cache(key, sim[key])
        if wiener_filter and not self.cacher.is_cached('f_wf'):
            f_wf, niter = argmaxf_logpdf(sim['ds'], sim['phi'])
            log.info('Wiener filter converged in {} iterations'.format(niter))
            self.cacher.cache('f_wf', f_wf)
        log.info('outputs stored in {}'.format(os.path.abspath(self.outdir)))
        return sim


def get_parser():
    parser = argparse.ArgumentParser(description='flatlens simulated dataset builder.')
    parser.add_argument('-t', dest='theta_pix', type=float, default=2., help='pixel size in arcmin')
    parser.add_argument('-n', dest='Nside', type=int, nargs='+', default=[64], help='number of pixels, Nside or Ny Nx')
    parser.add_argument('-p', dest='pol', type=str, default='P', help="polarization, one of 'I', 'P', 'IP'")
    parser.add_argument('-o', dest='outdir', type=str, default='flatlens_sim', help='output directory')
    parser.add_argument('--seed', dest='seed', type=int, default=None, help='random seed')
    parser.add_argument('--dtype', dest='dtype', type=str, default='float32', choices=['float32', 'float64'])
    parser.add_argument('--nlev', dest='uK_arcmin_T', type=float, default=3., help='temperature noise level, muK arcmin')
    parser.add_argument('--ell-knee', dest='ell_knee', type=float, default=100.)
    parser.add_argument('--alpha-knee', dest='alpha_knee', type=float, default=3.)
    parser.add_argument('--beam', dest='beam_fwhm', type=float, default=0., help='beam FWHM in arcmin')
    parser.add_argument('--lowpass', dest='lowpass', type=float, default=3000., help='harmonic low-pass of the data mask')
    parser.add_argument('--Nbatch', dest='Nbatch', type=int, default=None)
    parser.add_argument('--r', dest='r', type=float, default=None, help='fiducial tensor-to-scalar ratio')
    parser.add_argument('--cls', dest='cls', type=str, nargs=2, default=None, metavar=('UNLENSED', 'LENSED'),
                        help='CAMB lenspotentialCls and lensedCls files, used instead of running CAMB')
    parser.add_argument('--wf', dest='wiener_filter', action='store_true', help='also store the Wiener-filtered field')
    parser.add_argument('-v', dest='verbose', action='store_true', help='DEBUG logging')
    return parser


def main(argv=None):
    args = get_parser().parse_args(argv)
    sim_kwargs = dict(theta_pix=args.theta_pix, Nside=args.Nside[0] if len(args.Nside) == 1 else tuple(args.Nside),
                      pol=args.pol, dtype=args.dtype, seed=args.seed, uK_arcmin_T=args.uK_arcmin_T,
                      ell_knee=args.ell_knee, alpha_knee=args.alpha_knee, beam_fwhm=args.beam_fwhm,
                      bandpass_mask=LowPass(args.lowpass), Nbatch=args.Nbatch)
    if args.cls is not None:
        sim_kwargs['Cl'] = ClSpectra.from_camb_files(*args.cls, r=0. if args.r is None else args.r)
    elif args.r is not None:
        sim_kwargs['fiducial_theta'] = {'r': args.r}
    return run(args.outdir, verbose=args.verbose, **sim_kwargs).run(wiener_filter=args.wiener_filter)


if __name__ == '__main__':
    """Entry point from the command line
    """
    try:
        main()
    except Exception as err:
        # expection formatter. Don't want all these logdecorator functions in the trace.
        _msg = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        msg = ''
        skip = 0
        for line in _msg.splitlines():
            if skip > 0:
                skip -= 1
            else:
                # Each decorator call comes with three lines of trace
                if 'logdecorator' in line:
                    skip = 3
                else:
                    msg += line + '\n'
        log.error(msg)
        raise SystemExit(1)
