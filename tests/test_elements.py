import numpy as np
import unittest
import os
import sys

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
import walldist


class QuadratureCase(unittest.TestCase):
    def test_gauss_weights(self):
        for ndims in (2, 3):
            for npts in (1, 2, 3, 4):
                quadrature = walldist.QuadratureGauss(ndims, npts)
                self.assertEqual(quadrature.get_nquads(), npts**ndims)
                self.assertAlmostEqual(
                    np.sum(quadrature.get_weight()), 2.0**ndims, delta=1e-13
                )
        return

    def test_gauss_exactness(self):
        # x^3 y^2 + x^2 y^2 integrates to 4/9 on [-1, 1]^2
        quadrature = walldist.QuadratureGauss(2, 2)
        pts = quadrature.get_pt()
        vals = pts[:, 0] ** 3 * pts[:, 1] ** 2 + pts[:, 0] ** 2 * pts[:, 1] ** 2
        self.assertAlmostEqual(vals.dot(quadrature.get_weight()), 4.0 / 9.0, delta=1e-14)
        return

    def test_point_ordering(self):
        quadrature = walldist.QuadratureGauss(2, 2)
        a = 1.0 / np.sqrt(3.0)
        ref = np.array([[-a, -a], [a, -a], [-a, a], [a, a]])
        self.assertTrue(np.allclose(quadrature.get_pt(), ref, rtol=0.0, atol=1e-15))
        np.testing.assert_allclose(quadrature.get_pt(0), [-a, -a], atol=1e-15)
        return

    def test_patch(self):
        quadrature = walldist.QuadraturePatch(3, 2)
        self.assertEqual(quadrature.get_nquads(), 27)
        self.assertEqual(set(np.unique(quadrature.get_pt())), {-1.0, 0.0, 1.0})
        with self.assertRaises(ValueError):
            walldist.QuadraturePatch(2, 0)
        return


class LagrangeBasisCase(unittest.TestCase):
    def test_kronecker_property(self):
        for ndims in (2, 3):
            for degree in (1, 2, 3):
                quadrature = walldist.QuadratureGauss(ndims, 2)
                basis = walldist.BasisLagrange(ndims, degree, quadrature)
                vals, _ = basis.eval_at(basis.get_support_points())
                np.testing.assert_allclose(
                    vals, np.eye(basis.nnodes_per_elem), atol=1e-13
                )
        return

    def test_partition_of_unity(self):
        np.random.seed(0)
        for ndims in (2, 3):
            quadrature = walldist.QuadratureGauss(ndims, 3)
            basis = walldist.BasisLagrange(ndims, 2, quadrature)
            N = basis.eval_shape_fun()
            Nderiv = basis.eval_shape_fun_deriv()
            self.assertEqual(N.shape, (3**ndims, 3**ndims))
            self.assertEqual(Nderiv.shape, (3**ndims, 3**ndims, ndims))
            np.testing.assert_allclose(N.sum(axis=1), 1.0, atol=1e-13)
            np.testing.assert_allclose(Nderiv.sum(axis=1), 0.0, atol=1e-12)

            pts = np.random.uniform(-1.0, 1.0, (10, ndims))
            vals, derivs = basis.eval_at(pts)
            np.testing.assert_allclose(vals.sum(axis=1), 1.0, atol=1e-13)
            np.testing.assert_allclose(derivs.sum(axis=1), 0.0, atol=1e-12)
        return

    def test_derivative_fd(self):
        np.random.seed(1)
        quadrature = walldist.QuadratureGauss(3, 2)
        basis = walldist.BasisLagrange(3, 2, quadrature)
        pt = np.random.uniform(-0.9, 0.9, 3)
        h = 1e-6
        _, derivs = basis.eval_at(pt)
        for k in range(3):
            dp = np.zeros(3)
            dp[k] = h
            vp, _ = basis.eval_at(pt + dp)
            vm, _ = basis.eval_at(pt - dp)
            np.testing.assert_allclose(
                (vp[0] - vm[0]) / (2.0 * h), derivs[0, :, k], atol=1e-8
            )
        return

    def test_face_nodes(self):
        quadrature = walldist.QuadratureGauss(2, 2)
        basis = walldist.BasisLagrange(2, 2, quadrature)
        self.assertEqual(list(basis.get_face_nodes(0)), [0, 3, 6])
        self.assertEqual(list(basis.get_face_nodes(1)), [2, 5, 8])
        self.assertEqual(list(basis.get_face_nodes(2)), [0, 1, 2])
        self.assertEqual(list(basis.get_face_nodes(3)), [6, 7, 8])
        with self.assertRaises(ValueError):
            basis.get_face_nodes(4)

        quadrature = walldist.QuadratureGauss(3, 2)
        basis = walldist.BasisLagrange(3, 2, quadrature)
        for face in range(6):
            nodes = basis.get_face_nodes(face)
            self.assertEqual(len(nodes), 9)
            axis, side = divmod(face, 2)
            np.testing.assert_array_equal(
                basis.get_support_points()[nodes, axis], -1.0 if side == 0 else 1.0
            )
        return

    def test_invalid(self):
        quadrature = walldist.QuadratureGauss(2, 2)
        with self.assertRaises(ValueError):
            walldist.BasisLagrange(3, 2, quadrature)
        with self.assertRaises(ValueError):
            walldist.BasisLagrange(2, 0, quadrature)
        return


class FEValuesCase(unittest.TestCase):
    def test_affine_cell(self):
        mesh = walldist.HyperCubeMesh(2)
        mesh.refine_global(2)
        quadrature = walldist.QuadratureGauss(2, 2)
        basis = walldist.BasisLagrange(2, 2, quadrature)
        fe_values = walldist.FEValues(basis, mesh.cell_vertices())

        # Each cell has size 0.5 x 0.5
        np.testing.assert_allclose(fe_values.JxW.sum(axis=1), 0.25, atol=1e-14)
        np.testing.assert_allclose(fe_values.JxW.sum(), 4.0, atol=1e-13)
        np.testing.assert_allclose(fe_values.Jq[..., 0, 0], 0.25, atol=1e-15)
        np.testing.assert_allclose(fe_values.Jq[..., 0, 1], 0.0, atol=1e-15)

        # Gradients of a linear field are exact
        N, Ngrad, JxW, Xq = fe_values.reinit(5)
        Xs = mesh.cell_vertices(5)
        geometry = walldist.BasisLagrange(2, 1, quadrature)
        Nv, _ = geometry.eval_at(basis.get_support_points())
        Xn = Nv.dot(Xs)
        u = 3.0 * Xn[:, 0] - 2.0 * Xn[:, 1]
        grad = np.einsum("qlk, l -> qk", Ngrad, u)
        np.testing.assert_allclose(grad[:, 0], 3.0, atol=1e-12)
        np.testing.assert_allclose(grad[:, 1], -2.0, atol=1e-12)
        np.testing.assert_allclose(N.dot(u), 3.0 * Xq[:, 0] - 2.0 * Xq[:, 1], atol=1e-13)
        return

    def test_degenerate_cell(self):
        quadrature = walldist.QuadratureGauss(2, 2)
        basis = walldist.BasisLagrange(2, 1, quadrature)
        Xe = np.zeros((1, 4, 2))
        with self.assertRaises(ValueError):
            walldist.FEValues(basis, Xe)
        return


if __name__ == "__main__":
    unittest.main()
