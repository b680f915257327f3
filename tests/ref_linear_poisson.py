import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve


class Poisson:
    """
    Reference bilinear quad solver for -∆u = g, u = 0 on the nodes in bcs
    """

    def __init__(self, conn, x, bcs, gfunc):
        self.conn = np.array(conn)
        self.x = np.array(x)

        self.nelems = self.conn.shape[0]
        self.nnodes = int(np.max(self.conn)) + 1
        self.nvars = self.nnodes

        self.reduced = self._compute_reduced_variables(self.nvars, bcs)
        self.g = self._compute_rhs(gfunc)

        # Set up arrays for assembling the matrix
        i = []
        j = []
        for index in range(self.nelems):
            for ii in self.conn[index, :]:
                for jj in self.conn[index, :]:
                    i.append(ii)
                    j.append(jj)

        # Convert the lists into numpy arrays
        self.i = np.array(i, dtype=int)
        self.j = np.array(j, dtype=int)

    def _compute_reduced_variables(self, nvars, bcs):
        """
        Compute the reduced set of variables
        """
        reduced = list(range(nvars))
        for node in bcs:
            reduced.remove(node)

        return reduced

    def _eval_basis_and_jacobian(self, xi, eta, xe, ye, J, detJ, invJ=None):
        """
        Evaluate the basis functions and Jacobian of the transformation
        """

        N = 0.25 * np.array(
            [
                (1.0 - xi) * (1.0 - eta),
                (1.0 + xi) * (1.0 - eta),
                (1.0 + xi) * (1.0 + eta),
                (1.0 - xi) * (1.0 + eta),
            ]
        )
        Nxi = 0.25 * np.array([-(1.0 - eta), (1.0 - eta), (1.0 + eta), -(1.0 + eta)])
        Neta = 0.25 * np.array([-(1.0 - xi), -(1.0 + xi), (1.0 + xi), (1.0 - xi)])

        # Compute the Jacobian transformation at each quadrature points
        J[:, 0, 0] = np.dot(xe, Nxi)
        J[:, 1, 0] = np.dot(ye, Nxi)
        J[:, 0, 1] = np.dot(xe, Neta)
        J[:, 1, 1] = np.dot(ye, Neta)

        # Compute the inverse of the Jacobian
        detJ[:] = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]

        if invJ is not None:
            invJ[:, 0, 0] = J[:, 1, 1] / detJ
            invJ[:, 0, 1] = -J[:, 0, 1] / detJ
            invJ[:, 1, 0] = -J[:, 1, 0] / detJ
            invJ[:, 1, 1] = J[:, 0, 0] / detJ

        return N, Nxi, Neta

    def _compute_rhs(self, gfunc):
        """
        Compute the right-hand-side using the function callback
        """

        forces = np.zeros(self.nnodes)

        gauss_pts = [-1.0 / np.sqrt(3.0), 1.0 / np.sqrt(3.0)]

        J = np.zeros((self.nelems, 2, 2))
        detJ = np.zeros(self.nelems)

        # Compute the x and y coordinates of each element
        xe = self.x[self.conn, 0]
        ye = self.x[self.conn, 1]

        fe = np.zeros(self.conn.shape)

        for j in range(2):
            for i in range(2):
                xi = gauss_pts[i]
                eta = gauss_pts[j]
                N, Nxi, Neta = self._eval_basis_and_jacobian(xi, eta, xe, ye, J, detJ)

                # Evaluate the function
                xvals = np.dot(xe, N)
                yvals = np.dot(ye, N)
                gvals = gfunc(xvals, yvals)

                fe += np.outer(detJ * gvals, N)

        for i in range(4):
            np.add.at(forces, self.conn[:, i], fe[:, i])

        return forces

    def assemble_jacobian(self):
        """
        Assemble the Jacobian matrix
        """

        gauss_pts = [-1.0 / np.sqrt(3.0), 1.0 / np.sqrt(3.0)]

        # Assemble all of the the 4 x 4 element stiffness matrix
        Ke = np.zeros((self.nelems, 4, 4))
        Be = np.zeros((self.nelems, 2, 4))

        J = np.zeros((self.nelems, 2, 2))
        invJ = np.zeros(J.shape)
        detJ = np.zeros(self.nelems)

        # Compute the x and y coordinates of each element
        xe = self.x[self.conn, 0]
        ye = self.x[self.conn, 1]

        for j in range(2):
            for i in range(2):
                xi = gauss_pts[i]
                eta = gauss_pts[j]
                N, Nxi, Neta = self._eval_basis_and_jacobian(
                    xi, eta, xe, ye, J, detJ, invJ
                )

                # [Nx, Ny] = [Nxi, Neta]*invJ
                Nx = np.outer(invJ[:, 0, 0], Nxi) + np.outer(invJ[:, 1, 0], Neta)
                Ny = np.outer(invJ[:, 0, 1], Nxi) + np.outer(invJ[:, 1, 1], Neta)

                # Set the B matrix for each element
                Be[:, 0, :] = Nx
                Be[:, 1, :] = Ny

                Ke += np.einsum("n,nij,nil -> njl", detJ, Be, Be)

        K = sparse.coo_matrix((Ke.flatten(), (self.i, self.j)))
        K = K.tocsr()

        return K

    def reduce_vector(self, forces):
        """
        Eliminate essential boundary conditions from the vector
        """
        return forces[self.reduced]

    def reduce_matrix(self, matrix):
        """
        Eliminate essential boundary conditions from the matrix
        """
        temp = matrix[self.reduced, :]
        return temp[:, self.reduced]

    def solve(self):
        """
        Perform a linear static analysis
        """

        K = self.assemble_jacobian()
        Kr = self.reduce_matrix(K)
        fr = self.reduce_vector(self.g)

        ur = spsolve(Kr, fr)

        u = np.zeros(self.nvars)
        u[self.reduced] = ur

        return u


def square_torsion(x, y, nterms=40):
    """
    Series solution of -∆u = 1 on [-1, 1]^2 with u = 0 on the boundary
    """
    u = 0.5 * (1.0 - x**2)
    for k in range(nterms):
        n = 2 * k + 1
        u -= (
            (16.0 / np.pi**3)
            * (-1.0) ** k
            * np.cos(0.5 * n * np.pi * x)
            * np.cosh(0.5 * n * np.pi * y)
            / (n**3 * np.cosh(0.5 * n * np.pi))
        )
    return u
