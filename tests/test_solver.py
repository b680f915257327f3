import numpy as np
import unittest
import os
import sys

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
import walldist


def create_system(ndims=2, n_refinements=3):
    mesh = walldist.HyperCubeMesh(ndims)
    mesh.refine_global(n_refinements)
    quadrature = walldist.QuadratureGauss(ndims, 2)
    basis = walldist.BasisLagrange(ndims, 2, quadrature)
    dof_handler = walldist.DoFHandler(mesh)
    dof_handler.distribute_dofs(basis)
    model = walldist.PoissonModel(dof_handler, quadrature, basis)
    K, rhs = model.assemble_system()
    u = np.zeros(dof_handler.n_dofs)
    boundary_values = walldist.interpolate_boundary_values(
        dof_handler, 0, walldist.zero_function
    )
    walldist.apply_boundary_values(boundary_values, K, u, rhs)
    return dof_handler, K, u, rhs


class PreconditionSSORCase(unittest.TestCase):
    def test_against_dense(self):
        _, K, _, _ = create_system(2, 1)
        A = K.toarray()
        D = np.diag(np.diag(A))
        L = np.tril(A, -1)
        U = np.triu(A, 1)

        np.random.seed(0)
        r = np.random.rand(A.shape[0])
        for omega in (1.0, 1.3):
            precond = walldist.PreconditionSSOR(K, omega)
            Minv = (
                omega
                * (2.0 - omega)
                * np.linalg.solve(D + omega * U, D.dot(np.linalg.solve(D + omega * L, r)))
            )
            np.testing.assert_allclose(precond.vmult(r), Minv, rtol=1e-12, atol=1e-14)
        return

    def test_symmetric(self):
        _, K, _, _ = create_system(2, 2)
        M = walldist.PreconditionSSOR(K).aslinearoperator()
        np.random.seed(1)
        p = np.random.rand(K.shape[0])
        q = np.random.rand(K.shape[0])
        self.assertAlmostEqual(p.dot(M.matvec(q)), q.dot(M.matvec(p)), delta=1e-10)
        self.assertGreater(p.dot(M.matvec(p)), 0.0)
        return

    def test_invalid(self):
        _, K, _, _ = create_system(2, 1)
        with self.assertRaises(ValueError):
            walldist.PreconditionSSOR(K, 2.0)
        return


class SolverCGCase(unittest.TestCase):
    def test_ssor_cg(self):
        dof_handler, K, u, rhs = create_system(2, 4)
        control = walldist.SolverControl(1000, 1e-12)
        solver = walldist.SolverCG(control)
        solver.solve(K, u, rhs, walldist.PreconditionSSOR(K, 1.0))

        self.assertTrue(control.converged)
        self.assertGreater(control.last_step, 0)
        self.assertLess(control.last_step, 1000)
        self.assertLess(np.linalg.norm(rhs - K.dot(u)), 1e-11)

        # Boundary dofs are never touched by the preconditioned iteration
        bdofs = dof_handler.boundary_dofs(0)
        np.testing.assert_array_equal(u[bdofs], 0.0)
        self.assertAlmostEqual(u.max(), 0.2947, delta=1e-3)
        return

    def test_amg_cg(self):
        _, K, u, rhs = create_system(2, 4)
        u_ssor = u.copy()
        control = walldist.SolverControl(1000, 1e-12)
        walldist.SolverCG(control).solve(K, u, rhs, walldist.PreconditionAMG(K))
        self.assertTrue(control.converged)

        walldist.SolverCG(walldist.SolverControl()).solve(
            K, u_ssor, rhs, walldist.PreconditionSSOR(K)
        )
        np.testing.assert_allclose(u, u_ssor, atol=1e-8)
        return

    def test_unpreconditioned(self):
        _, K, u, rhs = create_system(2, 2)
        control = walldist.SolverControl(1000, 1e-12)
        walldist.SolverCG(control).solve(K, u, rhs)
        self.assertTrue(control.converged)
        return

    def test_non_convergence(self):
        _, K, u, rhs = create_system(2, 3)
        control = walldist.SolverControl(2, 1e-12)
        solver = walldist.SolverCG(control)
        with self.assertRaises(walldist.SolverNonConvergence) as cm:
            solver.solve(K, u, rhs, walldist.PreconditionSSOR(K))

        e = cm.exception
        self.assertIsInstance(e, RuntimeError)
        self.assertEqual(e.iterations, 2)
        self.assertGreater(e.residual, 1e-12)
        self.assertFalse(control.converged)
        # The last iterate is kept
        np.testing.assert_array_equal(u, e.iterate)
        self.assertGreater(np.abs(u).max(), 0.0)
        return

    def test_invalid_control(self):
        with self.assertRaises(ValueError):
            walldist.SolverControl(0, 1e-12)
        with self.assertRaises(ValueError):
            walldist.SolverControl(10, 0.0)
        return


if __name__ == "__main__":
    unittest.main()
