import unittest

import numpy as np

from flatlens.config.etc.errorhandler import ConfigurationConflictError, InsufficientRangeError
from flatlens.config.metamodel.sim_mm import FLATLENS_Simulation
from flatlens.core.dataset import BaseDataSet, Mixed, NoLensingDataSet, mix, unmix
from flatlens.core.lensing import InterpLensing
from flatlens.core.operator import FourierOp, logdet
from flatlens.core.param_operator import ParamDependentOp
from flatlens.core.preconditioner import hessian_logpdf_preconditioner
from flatlens.core.QE.quadratic import quadratic_estimate_noise
from flatlens.sims.cls import Cl_to_cov
from flatlens.sims.load_sim import load_sim, load_nolensing_sim
from flatlens.sims.masks import make_mask, LowPass, HighPass
from flatlens.utils import batch

from _common import toy_proj, toy_spectra, toy_operators

CL = toy_spectra()


class TestLoadNoLensingSim(unittest.TestCase):
    """16 x 16 patch of 2 arcmin pixels, 3 muK arcmin temperature noise, no beam and no pixel mask."""
    kwargs = dict(theta_pix=2, Nside=16, pol='I', uK_arcmin_T=3., beam_fwhm=0., seed=1, Cl=CL)

    def test_deterministic(self):
        s1 = load_nolensing_sim(**self.kwargs)
        s2 = load_nolensing_sim(**self.kwargs)
        np.testing.assert_array_equal(s1['d'], s2['d'])
        np.testing.assert_array_equal(s1['f'], s2['f'])
        s3 = load_nolensing_sim(**dict(self.kwargs, seed=2))
        self.assertFalse(np.allclose(s1['d'], s3['d']))

    def test_logpdf(self):
        sim = load_nolensing_sim(**self.kwargs)
        ds = sim['ds']
        self.assertIsInstance(ds, NoLensingDataSet)
        self.assertEqual(sim['d'].shape, (1, 16, 16))
        self.assertEqual(sim['d'].dtype, np.float32)
        self.assertTrue(np.isfinite(ds.logpdf(sim['f'])))
        np.testing.assert_array_equal(sim['f'], sim['f_lensed'])

    def test_lensed_variants(self):
        sim = load_nolensing_sim(lensed_covariance=True, lensed_data=True, **self.kwargs)
        ds = sim['ds']
        self.assertIsInstance(ds.Cf, FourierOp)
        self.assertFalse(np.allclose(sim['f'], sim['f_lensed']))


class TestLoadSim(unittest.TestCase):
    kwargs = dict(theta_pix=2, Nside=16, pol='P', uK_arcmin_T=1., beam_fwhm=2., seed=0, Cl=CL, dtype=np.float64)

    @classmethod
    def setUpClass(cls):
        cls.sim = load_sim(**cls.kwargs)

    def test_outputs(self):
        sim = self.sim
        self.assertEqual(set(sim), {'f', 'f_lensed', 'phi', 'd', 'ds', 'ds0', 'Cl', 'proj'})
        self.assertEqual(sim['f'].shape, (2, 16, 16))
        self.assertEqual(sim['phi'].shape, (1, 16, 16))
        self.assertEqual(sim['proj'], toy_proj(16))
        ds = sim['ds']
        self.assertIsInstance(ds, BaseDataSet)
        self.assertIsInstance(ds.L, InterpLensing)
        self.assertIsInstance(ds.Cf, ParamDependentOp)
        self.assertIsInstance(ds.Nphi, FourierOp)
        self.assertIs(ds.d, sim['d'])

    def test_logpdf(self):
        sim = self.sim
        self.assertTrue(np.isfinite(sim['ds'].logpdf(sim['f'], sim['phi'])))
        self.assertTrue(np.isfinite(sim['ds0'].logpdf(sim['f'], sim['phi'])))
        self.assertTrue(np.isfinite(sim['ds'].logpdf(sim['f'], sim['phi'], theta={'r': 0.2, 'Aphi': 1.1})))

    def test_fiducial_evaluated(self):
        ds0 = self.sim['ds0']
        for name in ('Cf', 'Cphi', 'D', 'G'):
            self.assertIsInstance(getattr(ds0, name), FourierOp, name)
        np.testing.assert_allclose(ds0.Cf.mat, self.sim['ds'].Cf().mat)
        np.testing.assert_allclose(self.sim['ds'].G().mat[..., 0, 0], 1., atol=1e-12)

    def test_parameter_dependence(self):
        ds = self.sim['ds']
        self.assertTrue(np.all(ds.Cf(r=0.).diag() <= ds.Cf().diag()))
        np.testing.assert_allclose(ds.Cphi(Aphi=2.).mat, 2 * ds.Cphi().mat)

    def test_preconditioners(self):
        ds = self.sim['ds']
        proj = self.sim['proj']
        H = hessian_logpdf_preconditioner('phi_mix', Mixed(ds))
        self.assertTrue(np.all(H.diag()[:, proj.ell > 0] > 0))
        Hf = hessian_logpdf_preconditioner('f', ds)
        self.assertTrue(np.all(np.isfinite(Hf.diag())))

    def test_mixing_operators_invertible(self):
        ds, f, phi = self.sim['ds'], self.sim['f'], self.sim['phi']
        theta = {'r': 0.3, 'Aphi': 1.3}
        D, G = ds.D(theta), ds.G(theta)
        np.testing.assert_allclose(D.solve(D @ f), f, atol=1e-10 * np.max(np.abs(f)))
        np.testing.assert_allclose(G.solve(G @ phi), phi, atol=1e-10 * np.max(np.abs(phi)))

    def test_mix_roundtrip_at_theta(self):
        ds = self.sim['ds'].copy()
        f, phi = self.sim['f'], self.sim['phi']
        for theta in ({}, {'r': 0.3, 'Aphi': 1.3}):
            back = unmix(ds, **mix(ds, f, phi, theta=theta))
            self.assertEqual(back['theta'], theta)
            np.testing.assert_allclose(back['phi'], phi, atol=1e-10 * np.max(np.abs(phi)))
            np.testing.assert_allclose(back['f'], f, atol=1e-5 * np.max(np.abs(f)))

    def test_mixed_logpdf_at_theta(self):
        ds = self.sim['ds'].copy()
        f, phi = self.sim['f'], self.sim['phi']
        theta = {'r': 0.3, 'Aphi': 1.3}
        mixed = mix(ds, f, phi, theta=theta)
        expected = ds.logpdf(f, phi, theta=theta) - logdet(ds.D, theta) - logdet(ds.G, theta)
        got = Mixed(ds).logpdf(mixed['f_mix'], mixed['phi_mix'], theta=theta)
        self.assertAlmostEqual(got, expected, delta=1e-5 * abs(expected))

    def test_batched(self):
        sim = load_sim(Nbatch=2, **self.kwargs)
        self.assertEqual(sim['d'].shape, (2, 2, 16, 16))
        self.assertEqual(sim['ds'].L.nbatch, 2)
        np.testing.assert_array_equal(sim['d'][0], sim['d'][1])
        lp = sim['ds'].logpdf(batch(sim['f'], 2), batch(sim['phi'], 2))
        self.assertEqual(np.shape(lp), (2,))
        self.assertAlmostEqual(lp[0], lp[1])

    def test_pixel_mask(self):
        sim = load_sim(pixel_mask_kwargs=dict(edge_padding_deg=0.05, num_ptsrcs=2, ptsrc_radius_arcmin=3.),
                       **dict(self.kwargs, pol='I'))
        self.assertTrue(np.isfinite(sim['ds'].logpdf(sim['f'], sim['phi'])))


class TestLoadSimErrors(unittest.TestCase):
    def test_conflict(self):
        with self.assertRaises(ConfigurationConflictError) as cm:
            load_sim(theta_pix=2, Nside=16, pol='I', Cl=CL, fiducial_theta={'r': 0.1})
        self.assertIsInstance(cm.exception, ValueError)
        cfg = FLATLENS_Simulation(theta_pix=2, Nside=16, pol='I', Cl=CL, fiducial_theta={'Aphi': 1.2})
        self.assertEqual(cfg.Aphi0, 1.2)

    def test_insufficient_range(self):
        with self.assertRaises(InsufficientRangeError):
            load_sim(theta_pix=2, Nside=16, pol='I', Cl=toy_spectra(lmax=3000))

    def test_invalid_options(self):
        with self.assertRaises(ValueError):
            load_sim(theta_pix=2, Nside=16, pol='Q', Cl=CL)
        with self.assertRaises(ValueError):
            load_sim(theta_pix=-1, Nside=16, pol='I', Cl=CL)
        with self.assertRaises(ValueError):
            load_sim(theta_pix=2, Nside=16, pol='I', Cl=CL, seed=1.5)

    def test_rfid_deprecated(self):
        with self.assertWarns(DeprecationWarning):
            cfg = FLATLENS_Simulation(theta_pix=2, Nside=16, pol='I', rfid=0.05)
        self.assertEqual(cfg.fiducial_theta, {'r': 0.05})
        self.assertIsNone(cfg.rfid)
        with self.assertWarns(DeprecationWarning):
            with self.assertRaises(ConfigurationConflictError):
                FLATLENS_Simulation(theta_pix=2, Nside=16, pol='I', rfid=0.05, Cl=CL)

    def test_shape(self):
        self.assertEqual(FLATLENS_Simulation(theta_pix=2, Nside=(8, 12), pol='I').shape, (8, 12))
        self.assertEqual(FLATLENS_Simulation(theta_pix=2, Nside=16, pol='I').shape, (16, 16))


class TestQuadraticEstimateNoise(unittest.TestCase):
    def setUp(self):
        self.proj = toy_proj(16)
        ops, cls = toy_operators(self.proj, 'IP', masked=False)
        Cf_lensed = Cl_to_cov('IP', self.proj, *(cls.total[k] for k in ('tt', 'ee', 'bb', 'te')))
        self.ds = BaseDataSet(Cphi=Cl_to_cov('I', self.proj, cls.total['pp']), Cf_lensed=Cf_lensed, **ops)

    def test_minimum_variance(self):
        tt = quadratic_estimate_noise(self.ds, self.proj, 'I').diag()[0]
        eb = quadratic_estimate_noise(self.ds, self.proj, 'P').diag()[0]
        mv = quadratic_estimate_noise(self.ds, self.proj, 'IP').diag()[0]
        both = (tt > 0) & (eb > 0)
        self.assertTrue(np.any(both))
        self.assertTrue(np.all(mv[both] <= np.minimum(tt, eb)[both] * (1. + 1e-10)))
        self.assertEqual(mv[0, 0], 0.)
        self.assertTrue(np.all(np.isfinite(mv)))

    def test_even_under_reflection(self):
        iy = (-np.arange(self.proj.Ny)) % self.proj.Ny
        for pol in ('I', 'P', 'IP'):
            n0 = quadratic_estimate_noise(self.ds, self.proj, pol).diag()[0]
            np.testing.assert_array_equal(n0[iy, 0], n0[:, 0])
            np.testing.assert_array_equal(n0[iy, -1], n0[:, -1])

    def test_noise_increases_N0(self):
        tt = quadratic_estimate_noise(self.ds, self.proj, 'I').diag()[0]
        noisy = BaseDataSet(Cphi=self.ds.Cphi, Cf_lensed=self.ds.Cf_lensed, Cf=self.ds.Cf, Cn=4 * self.ds.Cn, B=self.ds.B)
        tt_noisy = quadratic_estimate_noise(noisy, self.proj, 'I').diag()[0]
        ok = tt > 0
        self.assertTrue(np.all(tt_noisy[ok] >= tt[ok] * (1. - 1e-10)))

    def test_invalid(self):
        with self.assertRaises(ValueError):
            quadratic_estimate_noise(self.ds, self.proj, 'Q')
        ops, _ = toy_operators(self.proj, 'I', masked=False)
        ds = BaseDataSet(Cphi=self.ds.Cphi, **ops)
        with self.assertRaises(ValueError):
            quadratic_estimate_noise(ds, self.proj, 'P')


class TestMasks(unittest.TestCase):
    def test_bandpass(self):
        Wl = LowPass(100).Wl(200)
        self.assertEqual(Wl[100], 1.)
        self.assertEqual(Wl[101], 0.)
        Wl = HighPass(50).Wl(200)
        self.assertEqual(Wl[49], 0.)
        self.assertEqual(Wl[200], 1.)

    def test_make_mask(self):
        rng = np.random.default_rng(0)
        mask = make_mask(rng, 32, 2., edge_padding_deg=0.1, apodization_deg=0.1, num_ptsrcs=3, ptsrc_radius_arcmin=4.)
        self.assertEqual(mask.shape, (32, 32))
        self.assertTrue(np.all((mask >= 0.) & (mask <= 1.)))
        self.assertEqual(mask[0, 0], 0.)
        self.assertTrue(np.any(mask == 1.))
        self.assertTrue(np.any((mask > 0.) & (mask < 1.)))
        np.testing.assert_array_equal(make_mask(np.random.default_rng(0), 32, 2., num_ptsrcs=3, ptsrc_radius_arcmin=4.),
                                      make_mask(np.random.default_rng(0), 32, 2., num_ptsrcs=3, ptsrc_radius_arcmin=4.))


if __name__ == '__main__':
    unittest.main()
