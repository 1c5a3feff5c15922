import os
import shutil
import tempfile
import unittest

import numpy as np

from flatlens.run import get_parser, main

from _common import write_camb_files


class TestRun(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.tmpdir = tempfile.mkdtemp()
        cls.fn_unlensed = os.path.join(cls.tmpdir, 'toy_lenspotentialCls.dat')
        cls.fn_lensed = os.path.join(cls.tmpdir, 'toy_lensedCls.dat')
        write_camb_files(cls.fn_unlensed, cls.fn_lensed)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.tmpdir)

    def _argv(self, outdir, *extra):
        return ['-t', '2', '-n', '16', '-p', 'I', '--seed', '0', '--dtype', 'float64',
                '--cls', self.fn_unlensed, self.fn_lensed, '-o', outdir] + list(extra)

    def test_parser_defaults(self):
        args = get_parser().parse_args([])
        self.assertEqual(args.pol, 'P')
        self.assertEqual(args.Nside, [64])
        self.assertFalse(args.wiener_filter)

    def test_main_writes_outputs(self):
        outdir = os.path.join(self.tmpdir, 'sim')
        sim = main(self._argv(outdir))
        for key in ('f', 'f_lensed', 'phi', 'd'):
            fn = os.path.join(outdir, key + '.npy')
            self.assertTrue(os.path.exists(fn), fn)
            np.testing.assert_array_equal(np.load(fn), sim[key])
        self.assertTrue(os.path.exists(os.path.join(outdir, 'sim.sha1')))
        self.assertFalse(os.path.exists(os.path.join(outdir, 'f_wf.npy')))
        self.assertEqual(sim['Cl'].params['r'], 0.)

        # same configuration reuses the directory, a different one is refused
        main(self._argv(outdir))
        with self.assertRaises(ValueError):
            main(self._argv(outdir, '--nlev', '5'))

    def test_main_wiener_filter(self):
        outdir = os.path.join(self.tmpdir, 'wf')
        main(self._argv(outdir, '--wf', '-n', '12', '10'))
        f_wf = np.load(os.path.join(outdir, 'f_wf.npy'))
        self.assertEqual(f_wf.shape, (1, 12, 10))
        self.assertTrue(np.all(np.isfinite(f_wf)))


if __name__ == '__main__':
    unittest.main()
