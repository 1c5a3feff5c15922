import unittest

import numpy as np

from flatlens.config.etc.errorhandler import PreconditionerNotDefinedError, FlatlensError
from flatlens.core.dataset import Mixed, gradientf_logpdf
from flatlens.core.operator import FourierOp, IdentityOp
from flatlens.core.preconditioner import hessian_logpdf_preconditioner, argmaxf_logpdf
from flatlens.sims.cls import Cl_to_cov
from flatlens.utils import fdot

from _common import toy_proj, toy_nolensing, toy_lensing, toy_spectra, small_phi


class TestHessianPreconditioner(unittest.TestCase):
    def setUp(self):
        self.proj = toy_proj(16)
        self.ds = toy_lensing(self.proj)
        self.ds.Nphi = Cl_to_cov('I', self.proj, 1e-3 * toy_spectra().total['pp'] + 1e-15)

    def test_field(self):
        for target in ('f', ('f',)):
            H = hessian_logpdf_preconditioner(target, self.ds)
            self.assertIsInstance(H, FourierOp)
            d = H.diag()
            self.assertTrue(np.all(np.isfinite(d)))
            self.assertTrue(np.all(d[:, self.proj.ell > 0] > 0))

    def test_field_value(self):
        ds = toy_nolensing(self.proj, masked=False)
        H = hessian_logpdf_preconditioner('f', ds)
        expected = 1. / ds.Cf.diag() + ds.B.diag() ** 2 / ds.Cn.diag()
        mask = self.proj.ell > 0
        np.testing.assert_allclose(H.diag()[:, mask], expected[:, mask], rtol=1e-10)

    def test_phi_mix(self):
        H = hessian_logpdf_preconditioner('phi_mix', Mixed(self.ds))
        d = H.diag()
        self.assertTrue(np.all(np.isfinite(d)))
        self.assertTrue(np.all(d[:, self.proj.ell > 0] > 0))
        self.assertTrue(H.is_diagonal())

    def test_phi_mix_needs_Nphi(self):
        self.ds.Nphi = None
        with self.assertRaises(ValueError):
            hessian_logpdf_preconditioner('phi_mix', self.ds)

    def test_unsupported(self):
        for target, ds in ((('f', 'phi'), self.ds), ('phi', self.ds), ('phi_mix', toy_nolensing(self.proj))):
            with self.assertRaises(PreconditionerNotDefinedError) as cm:
                hessian_logpdf_preconditioner(target, ds)
            self.assertIsInstance(cm.exception, NotImplementedError)
            self.assertIsInstance(cm.exception, FlatlensError)

    def test_phi_mix_needs_fourier_Cphi(self):
        self.ds.Cphi = IdentityOp()
        with self.assertRaises(PreconditionerNotDefinedError):
            hessian_logpdf_preconditioner('phi_mix', self.ds)


class TestWienerFilter(unittest.TestCase):
    def test_unmasked_nolensing(self):
        proj = toy_proj(16)
        ds = toy_nolensing(proj, masked=False)
        ds.d = ds.simulate(seed=0)['d']
        f, niter = argmaxf_logpdf(ds, tol=1e-10)
        self.assertLessEqual(niter, 5)
        np.testing.assert_allclose(gradientf_logpdf(ds, f), 0., atol=1e-6 * np.max(np.abs(ds.Cf.pinv() @ f)))

    def test_lensed(self):
        proj = toy_proj(16)
        ds = toy_lensing(proj, masked=False)
        sim = ds.simulate(seed=1)
        ds.d = sim['d']
        phi = small_phi(proj, np.random.default_rng(2))
        f, niter = argmaxf_logpdf(ds, phi, tol=1e-8, nsteps=200)
        self.assertLess(niter, 200)
        g = gradientf_logpdf(ds, f, phi)
        g0 = gradientf_logpdf(ds, np.zeros_like(f), phi)
        self.assertLess(np.sqrt(fdot(g, g)), 1e-6 * np.sqrt(fdot(g0, g0)))
        self.assertGreater(ds.logpdf(f, phi), ds.logpdf(sim['f'], phi))


if __name__ == '__main__':
    unittest.main()
