"""
Approximate wall distance from the solution of a Poisson problem

    -∆φ = 1 in Ω = [-1, 1]^dim,    φ = 0 on ∂Ω

discretized by continuous Q_p Lagrange elements on a uniformly refined hyper
cube. The distance to the wall is bounded by

    sMin = sqrt(|∇φ|^2 + 2φ) - |∇φ|_1
    sMax = sqrt(|∇φ|^2 + 2φ) + |∇φ|_1
"""
import os
import numpy as np
from scipy import sparse
from scipy import special
from scipy.sparse.linalg import cg, spsolve_triangular, LinearOperator
from abc import ABC, abstractmethod
import matplotlib.tri as tri
import pyamg
import fe_utils as utils
from fe_utils import time_this
from typing import Callable

# Default problem settings
N_REFINEMENTS = 4
FE_DEGREE = 2
N_GAUSS = 2
CG_TOLERANCE = 1e-12
CG_MAX_ITERATIONS = 1000

# Boundary marker of faces shared by two cells
INTERIOR_FACE = -1

# Vertex permutation from lexicographic order to vtk order
VTK_VERTEX_ORDER = {2: [0, 1, 3, 2], 3: [0, 1, 3, 2, 4, 5, 7, 6]}


def _tensor_index(m, ndims):
    """
    Multi-indices of an m x m (x m) lattice in lexicographic order, x index
    runs fastest

    Return:
        idx: (m**ndims, ndims) int array, idx[n, k] is the index along axis k
    """
    grids = np.meshgrid(*([np.arange(m)] * ndims), indexing="ij")
    return np.stack([g.ravel() for g in grids[::-1]], axis=-1)


def _lagrange_1d(nodes, t):
    """
    Evaluate the 1d Lagrange polynomials on given nodes and their derivatives

    Inputs:
        nodes: (m, ) interpolation nodes
        t: (npts, ) evaluation points

    Return:
        vals: (npts, m)
        derivs: (npts, m)
    """
    t = np.atleast_1d(np.asarray(t, dtype=float))
    m = len(nodes)
    vals = np.ones((t.shape[0], m))
    derivs = np.zeros((t.shape[0], m))
    for a in range(m):
        for b in range(m):
            if b == a:
                continue
            denom = nodes[a] - nodes[b]
            derivs[:, a] = derivs[:, a] * (t - nodes[b]) / denom + vals[:, a] / denom
            vals[:, a] *= (t - nodes[b]) / denom
    return vals, derivs


def unit_source(x):
    """
    The constant right-hand side r = 1
    """
    return np.ones(x.shape[:-1])


def zero_function(x):
    """
    Homogeneous Dirichlet data
    """
    return np.zeros(x.shape[:-1])


class QuadratureBase(ABC):
    """
    Abstract base class for quadrature object
    """

    @abstractmethod
    def __init__(self, pts, weights):
        """
        Args:
            pts: list-like, list of quadrature points
            weights: list-like, list of quadrature weights
        """
        assert len(pts) == len(weights)  # sanity check
        self.pts = np.asarray(pts, dtype=float)
        self.weights = np.asarray(weights, dtype=float)
        self.nquads = self.pts.shape[0]
        self.ndims = self.pts.shape[1]
        return

    def get_nquads(self):
        """
        Get number of quadrature points per element
        """
        return self.nquads

    def get_pt(self, idx=None):
        """
        Query the <idx>-th quadrature point (xi, eta) or (xi, eta, zeta) based
        on quadrature type, if idx is None, return all quadrature points as a
        list
        """
        if idx is not None:
            return self.pts[idx]
        else:
            return self.pts

    def get_weight(self, idx=None):
        """
        Query the weight of <idx>-th quadrature point, if idx is None, return
        all quadrature points as a list
        """
        if idx is not None:
            return self.weights[idx]
        else:
            return self.weights


class QuadratureGauss(QuadratureBase):
    """
    Tensor-product Gauss-Legendre rule on [-1, 1]^ndims, npts points per axis
    integrate polynomials of degree 2 * npts - 1 in each coordinate exactly
    """

    def __init__(self, ndims, npts=N_GAUSS):
        if npts < 1:
            raise ValueError(f"need at least one Gauss point, got {npts}")
        x, w = special.roots_legendre(npts)
        idx = _tensor_index(npts, ndims)
        pts = x[idx]
        weights = np.prod(w[idx], axis=-1)
        self.npts_1d = npts
        super().__init__(pts, weights)
        return


class QuadraturePatch(QuadratureBase):
    """
    Equispaced lattice with n_subdivisions + 1 points per axis, only used as
    an evaluation point set for output patches
    """

    def __init__(self, ndims, n_subdivisions):
        if n_subdivisions < 1:
            raise ValueError(f"n_subdivisions must be positive, got {n_subdivisions}")
        x = np.linspace(-1.0, 1.0, n_subdivisions + 1)
        idx = _tensor_index(n_subdivisions + 1, ndims)
        pts = x[idx]
        weights = np.full(len(pts), 2.0**ndims / len(pts))
        self.n_subdivisions = n_subdivisions
        super().__init__(pts, weights)
        return


class BasisBase(ABC):
    """
    Abstract class for the element basis function
    """

    @abstractmethod
    def __init__(self, ndims, nnodes_per_elem, quadrature: QuadratureBase):
        """
        Inputs:
            ndims: int, number of physical dimensions (2 or 3)
            nnodes_per_elem: int, number of nodes per element
            quadrature: object of type QuadratureBase
        """
        self.ndims = ndims
        self.nnodes_per_elem = nnodes_per_elem
        self.quadrature = quadrature
        self.nquads = self.quadrature.get_nquads()
        self.N = None
        self.Nderiv = None
        return

    @abstractmethod
    def _eval_shape_fun_on_quad_pt(self, qpt):
        """
        Args:
            qpt: a single quadrature point in local coordinate (xi, eta, ...)

        Return:
            shape_vals: list-like, shape function value for each node
        """
        shape_vals = []
        return shape_vals

    @abstractmethod
    def _eval_shape_deriv_on_quad_pt(self, qpt):
        """
        Args:
            qpt: a single quadrature point in local coordinate (xi, eta, ...)

        Return:
            shape_derivs: 1-dim list, [*dN1, *dN2, ...], where dNi = [dNi/dxi,
                          dNi/deta, ..]
        """
        shape_derivs = []
        return shape_derivs

    @time_this
    def eval_shape_fun(self):
        """
        Evaluate the shape function values at quadrature points

        Return:
            shape function values at each quadrature point
        """
        if self.N is None:
            self.N = np.zeros((self.nquads, self.nnodes_per_elem))
            self.N[:, :] = list(
                map(self._eval_shape_fun_on_quad_pt, self.quadrature.get_pt())
            )
        return self.N

    @time_this
    def eval_shape_fun_deriv(self):
        """
        Evaluate the shape function derivatives at quadrature points

        Return:
            shape function derivatives at each quadrature point w.r.t. each
            local coordinate xi, eta, ...
        """
        if self.Nderiv is None:
            self.Nderiv = np.zeros((self.nquads, self.nnodes_per_elem, self.ndims))
            self.Nderiv[:, :, :] = np.array(
                list(map(self._eval_shape_deriv_on_quad_pt, self.quadrature.get_pt()))
            ).reshape((self.nquads, self.nnodes_per_elem, self.ndims))
        return self.Nderiv


class BasisLagrange(BasisBase):
    """
    Tensor-product Lagrange basis Q_p on [-1, 1]^ndims.

    The nodes are the tensor product of p + 1 equispaced points per axis,
    numbered lexicographically with the x index running fastest, e.g. for
    Q2 in 2d:

        6 --- 7 --- 8
        |           |
        3     4     5
        |           |
        0 --- 1 --- 2

    Faces are numbered 2 * axis + side, side 0 is xi_axis = -1 and side 1 is
    xi_axis = +1.
    """

    def __init__(self, ndims, degree, quadrature: QuadratureBase):
        if ndims not in (2, 3):
            raise ValueError(f"only 2 and 3 dimensions are supported, got {ndims}")
        if degree < 1:
            raise ValueError(f"polynomial degree must be positive, got {degree}")
        if quadrature.ndims != ndims:
            raise ValueError("quadrature and basis dimensions do not match")
        self.degree = degree
        self.nodes_1d = np.linspace(-1.0, 1.0, degree + 1)
        self.node_index = _tensor_index(degree + 1, ndims)
        nnodes_per_elem = (degree + 1) ** ndims
        super().__init__(ndims, nnodes_per_elem, quadrature)
        return

    def get_support_points(self):
        """
        Reference coordinates of the nodes, (nnodes_per_elem, ndims)
        """
        return self.nodes_1d[self.node_index]

    def get_face_nodes(self, face):
        """
        Local indices of the nodes lying on the given face
        """
        axis, side = divmod(face, 2)
        if axis >= self.ndims:
            raise ValueError(f"face {face} does not exist in {self.ndims}d")
        target = 0 if side == 0 else self.degree
        return np.nonzero(self.node_index[:, axis] == target)[0]

    def eval_at(self, pts):
        """
        Evaluate shape functions and their local derivatives at arbitrary
        reference points

        Inputs:
            pts: (npts, ndims) reference coordinates

        Return:
            vals: (npts, nnodes_per_elem)
            derivs: (npts, nnodes_per_elem, ndims)
        """
        pts = np.atleast_2d(np.asarray(pts, dtype=float))
        npts = pts.shape[0]
        vals_1d = []
        derivs_1d = []
        for k in range(self.ndims):
            v, d = _lagrange_1d(self.nodes_1d, pts[:, k])
            vals_1d.append(v[:, self.node_index[:, k]])
            derivs_1d.append(d[:, self.node_index[:, k]])

        vals = np.ones((npts, self.nnodes_per_elem))
        for k in range(self.ndims):
            vals *= vals_1d[k]

        derivs = np.ones((npts, self.nnodes_per_elem, self.ndims))
        for j in range(self.ndims):
            for k in range(self.ndims):
                derivs[:, :, j] *= derivs_1d[k] if k == j else vals_1d[k]
        return vals, derivs

    def _eval_shape_fun_on_quad_pt(self, qpt):
        vals, _ = self.eval_at(qpt)
        return vals[0]

    def _eval_shape_deriv_on_quad_pt(self, qpt):
        _, derivs = self.eval_at(qpt)
        return derivs[0].flatten()


class HyperCubeMesh:
    """
    Conforming mesh of axis-aligned cells built by uniform bisection of the
    hyper cube [left, right]^ndims.

    Every refinement splits each active cell into 2^ndims children, ordered
    lexicographically by their position bits (x bit fastest). All levels are
    kept as a refinement tree, the active cells are the leaves.
    """

    def __init__(self, ndims, left=-1.0, right=1.0):
        if ndims not in (2, 3):
            raise ValueError(f"only 2 and 3 dimensions are supported, got {ndims}")
        if not left < right:
            raise ValueError(f"empty domain [{left}, {right}]")
        self.ndims = ndims
        self.left = float(left)
        self.right = float(right)
        self.frozen = False

        self.vertex_offsets = _tensor_index(2, ndims)

        self.levels_lower = [np.full((1, ndims), self.left)]
        self.levels_size = [np.full((1, ndims), self.right - self.left)]
        self.levels_parent = [np.array([-1], dtype=int)]
        return

    @property
    def n_levels(self):
        return len(self.levels_lower)

    @property
    def n_active_cells(self):
        return self.levels_lower[-1].shape[0]

    @property
    def n_cells(self):
        return int(np.sum([lower.shape[0] for lower in self.levels_lower]))

    @property
    def cell_lower(self):
        return self.levels_lower[-1]

    @property
    def cell_size(self):
        return self.levels_size[-1]

    def cell_parents(self, level):
        """
        Index of the parent (on level - 1) of each cell on the given level, -1
        for the root
        """
        return self.levels_parent[level]

    @time_this
    def refine_global(self, times=1):
        """
        Refine all active cells <times> times
        """
        if self.frozen:
            raise RuntimeError("cannot refine a mesh after dofs were distributed")
        if times < 0:
            raise ValueError(f"number of refinements must be non-negative, got {times}")

        nchildren = 2**self.ndims
        for _ in range(times):
            lower = self.levels_lower[-1]
            half = 0.5 * self.levels_size[-1]
            child_lower = (
                lower[:, None, :] + self.vertex_offsets[None, :, :] * half[:, None, :]
            )
            child_size = np.broadcast_to(half[:, None, :], child_lower.shape)
            self.levels_lower.append(child_lower.reshape(-1, self.ndims))
            self.levels_size.append(child_size.reshape(-1, self.ndims).copy())
            self.levels_parent.append(np.repeat(np.arange(lower.shape[0]), nchildren))
        return

    def cell_vertices(self, cell=None):
        """
        Vertex coordinates of the active cells in lexicographic order

        Return:
            Xe: (nelems, 2^ndims, ndims), or (2^ndims, ndims) for a single cell
        """
        lower = self.cell_lower
        size = self.cell_size
        if cell is not None:
            return lower[cell] + self.vertex_offsets * size[cell]
        return lower[:, None, :] + self.vertex_offsets[None, :, :] * size[:, None, :]

    def face_vertices(self, cell, face):
        axis, side = divmod(face, 2)
        local = self.vertex_offsets[:, axis] == side
        return self.cell_vertices(cell)[local]

    def face_boundary_ids(self):
        """
        Boundary marker of each face of each active cell: 0 if all vertices
        of the face lie on the boundary of the cube, INTERIOR_FACE otherwise

        Return:
            ids: (nelems, 2 * ndims)
        """
        verts = self.cell_vertices()
        atol = 1e-12 * (self.right - self.left)
        on_bnd = np.any(
            np.isclose(verts, self.left, rtol=0.0, atol=atol)
            | np.isclose(verts, self.right, rtol=0.0, atol=atol),
            axis=-1,
        )

        ids = np.full((self.n_active_cells, 2 * self.ndims), INTERIOR_FACE, dtype=int)
        for face in range(2 * self.ndims):
            axis, side = divmod(face, 2)
            local = self.vertex_offsets[:, axis] == side
            ids[np.all(on_bnd[:, local], axis=1), face] = 0
        return ids

    def find_cell(self, point):
        """
        Return the first active cell (in traversal order) containing point
        """
        point = np.asarray(point, dtype=float)
        if point.shape != (self.ndims,):
            raise ValueError(f"expected a point with {self.ndims} coordinates")
        tol = 1e-12 * (self.right - self.left)
        inside = np.all(
            (self.cell_lower - tol <= point)
            & (point <= self.cell_lower + self.cell_size + tol),
            axis=1,
        )
        cells = np.nonzero(inside)[0]
        if len(cells) == 0:
            raise ValueError(f"point {point} lies outside of the mesh")
        return cells[0]


class DoFHandler:
    """
    Enumerate the scalar degrees of freedom of a Lagrange basis on a mesh
    """

    def __init__(self, mesh: HyperCubeMesh):
        self.mesh = mesh
        self.basis = None
        self.conn = None
        self.support_points = None
        self.n_dofs = 0
        return

    @time_this
    def distribute_dofs(self, basis: BasisLagrange):
        """
        Map the reference nodes of each cell to physical space and merge the
        coincident ones. Indices are handed out in order of first appearance
        while walking the cells.
        """
        if self.conn is not None:
            raise RuntimeError("dofs have already been distributed")
        if basis.ndims != self.mesh.ndims:
            raise ValueError("basis and mesh dimensions do not match")

        mesh = self.mesh
        mesh.frozen = True
        ndims = mesh.ndims
        nelems = mesh.n_active_cells
        nnodes_per_elem = basis.nnodes_per_elem

        # Geometric map is the multilinear interpolation of the cell vertices
        geometry = BasisLagrange(ndims, 1, basis.quadrature)
        Nv, _ = geometry.eval_at(basis.get_support_points())
        Xs = np.zeros((nelems, nnodes_per_elem, ndims))
        utils.compute_elem_interp(Nv, mesh.cell_vertices(), Xs)
        pts = Xs.reshape(-1, ndims)

        # Quantize to half the node spacing
        spacing = mesh.cell_size.min() / basis.degree
        keys = np.rint(2.0 * (pts - mesh.left) / spacing).astype(np.int64)
        _, first, inverse = np.unique(
            keys, axis=0, return_index=True, return_inverse=True
        )
        inverse = inverse.reshape(-1)

        order = np.argsort(first, kind="stable")
        rank = np.empty_like(order)
        rank[order] = np.arange(len(order))

        self.basis = basis
        self.n_dofs = len(first)
        self.conn = rank[inverse].reshape(nelems, nnodes_per_elem)
        self.support_points = np.zeros((self.n_dofs, ndims))
        self.support_points[self.conn.ravel()] = pts
        return

    def _check_distributed(self):
        if self.conn is None:
            raise RuntimeError("dofs have not been distributed yet")

    def get_dof_indices(self, cell):
        """
        Global indices of the local nodes of a cell (local_to_global)
        """
        self._check_distributed()
        return self.conn[cell]

    def boundary_dofs(self, boundary_id=0):
        """
        Sorted global indices of all dofs on faces with the given marker
        """
        self._check_distributed()
        ids = self.mesh.face_boundary_ids()
        dofs = []
        for face in range(2 * self.mesh.ndims):
            cells = np.nonzero(ids[:, face] == boundary_id)[0]
            if len(cells):
                face_nodes = self.basis.get_face_nodes(face)
                dofs.append(self.conn[np.ix_(cells, face_nodes)].ravel())
        if not dofs:
            return np.array([], dtype=int)
        return np.unique(np.concatenate(dofs))


class FEValues:
    """
    Shape function values, physical gradients, JxW values and physical
    quadrature points for all cells at once
    """

    @time_this
    def __init__(self, basis: BasisLagrange, Xe):
        """
        Inputs:
            basis: the element basis, evaluated on its own quadrature
            Xe: cell vertex locations, (nelems, 2^ndims, ndims)
        """
        self.basis = basis
        self.quadrature = basis.quadrature
        self.geometry = BasisLagrange(basis.ndims, 1, basis.quadrature)

        nelems = Xe.shape[0]
        ndims = basis.ndims
        nquads = basis.nquads

        self.N = basis.eval_shape_fun()
        Nderiv = basis.eval_shape_fun_deriv()
        Ngeo = self.geometry.eval_shape_fun()
        Ngeo_deriv = self.geometry.eval_shape_fun_deriv()

        self.Xq = np.zeros((nelems, nquads, ndims))
        self.Jq = np.zeros((nelems, nquads, ndims, ndims))
        self.invJq = np.zeros((nelems, nquads, ndims, ndims))
        self.detJq = np.zeros((nelems, nquads))
        self.Ngrad = np.zeros((nelems, nquads, basis.nnodes_per_elem, ndims))

        # Compute Jacobian transformation -> Jq
        utils.compute_jtrans(Xe, Ngeo_deriv, self.Jq)

        # Compute Jacobian determinant -> detJq
        utils.compute_jdet(self.Jq, self.detJq)
        if np.any(np.abs(self.detJq) <= 0.0):
            raise ValueError("degenerate cell: zero Jacobian determinant")

        # Compute shape function gradient -> (invJq), Ngrad
        utils.compute_basis_grad(self.Jq, self.detJq, Nderiv, self.invJq, self.Ngrad)

        # Compute element mapping -> Xq
        utils.compute_elem_interp(Ngeo, Xe, self.Xq)

        self.JxW = np.abs(self.detJq) * self.quadrature.get_weight()[None, :]
        return

    def reinit(self, cell):
        """
        Return:
            N: (nquads, nnodes_per_elem)
            Ngrad: (nquads, nnodes_per_elem, ndims)
            JxW: (nquads, )
            Xq: (nquads, ndims)
        """
        return self.N, self.Ngrad[cell], self.JxW[cell], self.Xq[cell]


class SparsityPattern:
    """
    Compressed row pattern {(i, j): dofs i and j share a cell}
    """

    @time_this
    def __init__(self, conn, n_dofs):
        self.n_dofs = n_dofs
        keys = np.unique(self._entry_keys(conn))
        rows = keys // n_dofs
        self.keys = keys
        self.indices = (keys % n_dofs).astype(np.int64)
        self.indptr = np.searchsorted(rows, np.arange(n_dofs + 1)).astype(np.int64)
        return

    def _entry_keys(self, conn):
        """
        Row-major keys i * n + j of all (cell, i, j) entries of the element
        matrices, in cell order followed by lexicographic (i, j)
        """
        conn = np.asarray(conn, dtype=np.int64)
        nnodes_per_elem = conn.shape[1]
        elem_to_mat_i = np.repeat(np.arange(nnodes_per_elem), nnodes_per_elem)
        elem_to_mat_j = np.tile(np.arange(nnodes_per_elem), nnodes_per_elem)
        nz_i = conn[:, elem_to_mat_i].ravel()
        nz_j = conn[:, elem_to_mat_j].ravel()
        return nz_i * self.n_dofs + nz_j

    @property
    def n_nonzero_elements(self):
        return len(self.keys)

    def row_length(self, i):
        return int(self.indptr[i + 1] - self.indptr[i])

    def exists(self, i, j):
        key = i * self.n_dofs + j
        pos = np.searchsorted(self.keys, key)
        return bool(pos < len(self.keys) and self.keys[pos] == key)

    def positions(self, conn):
        """
        Position of every element matrix entry in the data array of a matrix
        built by make_matrix()
        """
        return np.searchsorted(self.keys, self._entry_keys(conn))

    def make_matrix(self):
        """
        Allocate a zero matrix storing exactly the entries of the pattern
        """
        data = np.zeros(self.n_nonzero_elements)
        return sparse.csr_matrix(
            (data, self.indices.copy(), self.indptr.copy()),
            shape=(self.n_dofs, self.n_dofs),
        )


class PoissonModel:
    """
    The 2- or 3-dimensional Poisson equation

    Equation:
    -∆u = g in Ω

    Boundary condition:
    u = u0 on ∂Ω

    Weak form:
    ∫ ∇u ∇v dΩ = ∫gv dΩ for test function v
    """

    @time_this
    def __init__(
        self,
        dof_handler: DoFHandler,
        quadrature: QuadratureBase,
        basis: BasisLagrange,
        gfunc: Callable = unit_source,
    ):
        """
        Inputs:
            dof_handler: dofs distributed with a basis of the same degree
            gfunc: source term, takes in x and return vals, where
                   x[..., 0] = xvals
                   x[..., 1] = yvals
                   x[..., 2] = zvals if is 3D problem
                   vals.shape == x[..., 0].shape
        """
        if dof_handler.conn is None:
            raise RuntimeError("dofs have not been distributed yet")
        if basis.nnodes_per_elem != dof_handler.conn.shape[1]:
            raise ValueError("basis does not match the distributed dofs")
        if basis.quadrature is not quadrature:
            raise ValueError("basis must be evaluated on the given quadrature")

        self.dof_handler = dof_handler
        self.quadrature = quadrature
        self.basis = basis
        self.gfunc = gfunc

        self.conn = dof_handler.conn
        self.n_dofs = dof_handler.n_dofs
        self.nelems = self.conn.shape[0]
        self.nnodes_per_elem = self.conn.shape[1]
        self.nquads = quadrature.get_nquads()

        self.fe_values = FEValues(basis, dof_handler.mesh.cell_vertices())

        # Sparsity pattern and the position of each element entry in it
        self.sparsity = SparsityPattern(self.conn, self.n_dofs)
        self.nz_pos = self.sparsity.positions(self.conn)

        # Element-wise rhs and Jacobian
        self.rhs_e = np.zeros((self.nelems, self.nnodes_per_elem))
        self.Ke_mat = np.zeros(
            (self.nelems, self.nnodes_per_elem, self.nnodes_per_elem)
        )
        self.fun_vals = np.zeros((self.nelems, self.nquads))

        self.rhs = np.zeros(self.n_dofs)
        return

    @time_this
    def compute_rhs(self):
        """
        Compute the global rhs vector (without considering boundary conditions)
        """
        self._compute_element_rhs(self.rhs_e)

        self.rhs[:] = 0.0
        np.add.at(self.rhs, self.conn.ravel(), self.rhs_e.ravel())
        return self.rhs

    @time_this
    def compute_jacobian(self, K=None):
        """
        Compute the element stiffness matrices and add them into the global
        matrix

        Inputs:
            K: matrix allocated by self.sparsity.make_matrix(), a new one is
               allocated if None

        Return:
            K: (sparse) global stiffness matrix
        """
        if K is None:
            K = self.sparsity.make_matrix()
        elif K.nnz != self.sparsity.n_nonzero_elements:
            raise ValueError("matrix does not follow the sparsity pattern")
        else:
            K.data[:] = 0.0

        self._compute_element_jacobian(self.Ke_mat)
        np.add.at(K.data, self.nz_pos, self.Ke_mat.ravel())
        return K

    def assemble_system(self, K=None):
        K = self.compute_jacobian(K)
        rhs = self.compute_rhs().copy()
        return K, rhs

    def _compute_element_rhs(self, rhs_e):
        """
        Evaluate element-wise rhs vectors:

            rhs_e = ∑ JxWq (gN)_q
                    q
        """
        fe_values = self.fe_values
        self.fun_vals[...] = np.broadcast_to(
            self.gfunc(fe_values.Xq), self.fun_vals.shape
        )
        rhs_e[...] = np.einsum(
            "iq,qj,iq -> ij", fe_values.JxW, fe_values.N, self.fun_vals, optimize=True
        )
        return

    def _compute_element_jacobian(self, Ke):
        """
        Evaluate element-wise stiffness matrices

            Ke = ∑ JxWq ( NxNxT + NyNyT + ...)_q
                 q
        """
        fe_values = self.fe_values
        Ke[...] = np.einsum(
            "iq,iqjl,iqkl -> ijk",
            fe_values.JxW,
            fe_values.Ngrad,
            fe_values.Ngrad,
            optimize=True,
        )
        return


def interpolate_boundary_values(dof_handler: DoFHandler, boundary_id, function):
    """
    Evaluate function at the support points of all dofs on faces with the
    given marker

    Return:
        boundary_values: dictionary {global dof index: value}
    """
    dofs = dof_handler.boundary_dofs(boundary_id)
    x = dof_handler.support_points[dofs]
    vals = np.broadcast_to(np.asarray(function(x), dtype=float), dofs.shape)
    return dict(zip(dofs.tolist(), vals.tolist()))


@time_this
def apply_boundary_values(boundary_values, K, x, rhs):
    """
    Apply Dirichlet boundary conditions to the global matrix, solution and
    right-hand-side vector by symmetric elimination:

        [Krr Krb  [ur    [fr          [Krr 0   [ur    [fr - Krb u0
         Kbr Kbb]  u0] =  fb]   =>     0   D]  u0] =  D u0       ]

    where D is the diagonal of Kbb. Zeroed entries are kept in the sparsity
    structure. K, x and rhs are modified in place.

    Inputs:
        boundary_values: dictionary {global dof index: value}
        K: csr stiffness matrix
        x: solution vector, receives the boundary values
        rhs: right-hand-side vector

    Return:
        K
    """
    if not boundary_values:
        return K

    n = K.shape[0]
    dof_fixed = np.fromiter(boundary_values.keys(), dtype=int, count=len(boundary_values))
    vals = np.fromiter(boundary_values.values(), dtype=float, count=len(boundary_values))
    if dof_fixed.min() < 0 or dof_fixed.max() >= n:
        raise ValueError("boundary dof index out of range")
    dof_free = np.setdiff1d(np.arange(n), dof_fixed)

    # Save Krb and diagonals
    temp = K[dof_free, :]
    Krb = temp[:, dof_fixed]
    diag = K.diagonal()

    # A zero diagonal would break definiteness, use the average instead
    fixed_diag = diag[dof_fixed]
    if np.any(fixed_diag == 0.0):
        nonzero = diag[diag != 0.0]
        fill = np.abs(nonzero).mean() if len(nonzero) else 1.0
        fixed_diag = np.where(fixed_diag == 0.0, fill, fixed_diag)
        diag[dof_fixed] = fixed_diag

    # Zero-out rows and columns
    is_fixed = np.zeros(n, dtype=bool)
    is_fixed[dof_fixed] = True
    rows = np.repeat(np.arange(n), np.diff(K.indptr))
    K.data[is_fixed[rows] | is_fixed[K.indices]] = 0.0

    # Restore diagonals
    K.setdiag(diag)

    # Set rhs and solution
    rhs[dof_free] -= Krb.dot(vals)
    rhs[dof_fixed] = vals * fixed_diag
    x[dof_fixed] = vals
    return K


class SolverNonConvergence(RuntimeError):
    """
    The iterative solver hit its iteration cap. The last iterate is kept so
    that the caller can decide whether to use it.
    """

    def __init__(self, iterations, residual, iterate):
        super().__init__(
            f"CG failed to converge in {iterations} iterations "
            f"(residual {residual:.3e})"
        )
        self.iterations = iterations
        self.residual = residual
        self.iterate = iterate


class SolverControl:
    """
    Stopping criterion ||r||_2 <= tolerance, failure after max_steps
    """

    def __init__(self, max_steps=CG_MAX_ITERATIONS, tolerance=CG_TOLERANCE):
        if max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        if tolerance <= 0.0:
            raise ValueError(f"tolerance must be positive, got {tolerance}")
        self.max_steps = max_steps
        self.tolerance = tolerance
        self.last_step = 0
        self.last_value = None
        self.converged = False
        return


class PreconditionSSOR:
    """
    Symmetric successive over-relaxation, omega = 1 is symmetric
    Gauss-Seidel:

        M^-1 = omega (2 - omega) (D + omega U)^-1 D (D + omega L)^-1
    """

    @time_this
    def __init__(self, A, omega=1.0):
        if not 0.0 < omega < 2.0:
            raise ValueError(f"relaxation factor must lie in (0, 2), got {omega}")
        A = sparse.csr_matrix(A)
        self.shape = A.shape
        self.omega = omega
        self.diag = A.diagonal()
        if np.any(self.diag == 0.0):
            raise ValueError("SSOR needs a matrix without zero diagonal entries")

        D = sparse.diags(self.diag)
        self.lower = (D + omega * sparse.tril(A, k=-1)).tocsr()
        self.upper = (D + omega * sparse.triu(A, k=1)).tocsr()
        return

    def vmult(self, src):
        src = np.asarray(src, dtype=float).ravel()
        y = spsolve_triangular(self.lower, src, lower=True)
        y *= self.diag
        z = spsolve_triangular(self.upper, y, lower=False)
        return self.omega * (2.0 - self.omega) * z

    def aslinearoperator(self):
        return LinearOperator(self.shape, matvec=self.vmult, dtype=float)


class PreconditionAMG:
    """
    One smoothed aggregation V-cycle
    """

    @time_this
    def __init__(self, A):
        self.ml = pyamg.smoothed_aggregation_solver(sparse.csr_matrix(A))
        return

    def aslinearoperator(self):
        return self.ml.aspreconditioner(cycle="V")


class SolverCG:
    """
    Preconditioned conjugate gradients for symmetric positive definite
    systems
    """

    def __init__(self, control: SolverControl):
        self.control = control
        return

    @time_this
    def solve(self, A, x, b, preconditioner=None):
        """
        Solve A x = b, the content of x is the initial guess and is
        overwritten by the result

        Return:
            x

        Raises:
            SolverNonConvergence if the tolerance is not met within max_steps
        """
        control = self.control
        control.last_step = 0
        control.converged = False

        def callback(xk):
            control.last_step += 1

        M = None if preconditioner is None else preconditioner.aslinearoperator()
        u, info = cg(
            A,
            b,
            x0=x.copy(),
            rtol=0.0,
            atol=control.tolerance,
            maxiter=control.max_steps,
            M=M,
            callback=callback,
        )
        if info < 0:
            raise ValueError(f"CG called with illegal input (code {info})")

        x[:] = u
        control.last_value = float(np.linalg.norm(b - A.dot(u)))
        control.converged = info == 0
        if not control.converged:
            raise SolverNonConvergence(control.last_step, control.last_value, u)
        return x


class WallDistancePostprocessor:
    """
    Derived quantities of a scalar field u:

        [∇u, sMin, sMax],  sMin/sMax = sqrt(|∇u|^2 + 2u) -/+ |∇u|_1

    Second derivatives, normals and evaluation points are accepted but not
    used.
    """

    def __init__(self, ndims, log=print):
        self.ndims = ndims
        self.log = log
        return

    def get_names(self):
        return ["Direction"] * self.ndims + ["sMin", "sMax"]

    def get_data_component_interpretation(self):
        return ["component_is_part_of_vector"] * self.ndims + [
            "component_is_scalar",
            "component_is_scalar",
        ]

    def get_needed_update_flags(self):
        return ("values", "gradients")

    def compute_derived_quantities_scalar(
        self, uh, duh, dduh=None, normals=None, points=None
    ):
        """
        Inputs:
            uh: field values, (npts, )
            duh: field gradients, (npts, ndims)

        Return:
            computed_quantities: (npts, ndims + 2)
        """
        uh = np.asarray(uh, dtype=float).ravel()
        duh = np.asarray(duh, dtype=float)
        npts = uh.shape[0]
        if duh.shape != (npts, self.ndims):
            raise ValueError(
                f"gradient array has shape {duh.shape}, expected {(npts, self.ndims)}"
            )

        l2_square = np.einsum("qk,qk -> q", duh, duh)
        l1 = np.sum(np.abs(duh), axis=1)
        radicand = l2_square + 2.0 * uh

        negative = radicand < 0.0
        if np.any(negative) and self.log is not None:
            self.log(
                f"[Warning] sqrt of negative value at {np.count_nonzero(negative)} "
                f"points (min {radicand.min():.3e}), clamped to 0"
            )
        root = np.sqrt(np.maximum(radicand, 0.0))

        computed_quantities = np.zeros((npts, self.ndims + 2))
        computed_quantities[:, : self.ndims] = duh
        # Min wall distance
        computed_quantities[:, self.ndims] = root - l1
        # Max wall distance
        computed_quantities[:, self.ndims + 1] = root + l1
        return computed_quantities


def _reference_coordinates(dof_handler: DoFHandler, point):
    mesh = dof_handler.mesh
    point = np.asarray(point, dtype=float)
    cell = mesh.find_cell(point)
    xi = 2.0 * (point - mesh.cell_lower[cell]) / mesh.cell_size[cell] - 1.0
    return cell, np.clip(xi, -1.0, 1.0)


def point_value(dof_handler: DoFHandler, u, point):
    """
    Evaluate the finite element field u at a physical point
    """
    cell, xi = _reference_coordinates(dof_handler, point)
    vals, _ = dof_handler.basis.eval_at(xi)
    return float(vals[0].dot(u[dof_handler.conn[cell]]))


def point_gradient(dof_handler: DoFHandler, u, point):
    """
    Evaluate the gradient of the finite element field u at a physical point
    """
    cell, xi = _reference_coordinates(dof_handler, point)
    _, derivs = dof_handler.basis.eval_at(xi)
    grad_ref = derivs[0].T.dot(u[dof_handler.conn[cell]])
    # Axis-aligned cells: J = diag(h / 2)
    return grad_ref * 2.0 / dof_handler.mesh.cell_size[cell]


def l2_error(dof_handler: DoFHandler, u, exact: Callable, n_gauss=4):
    """
    Compute ||u_h - u||_L2 with a Gauss rule of n_gauss points per axis
    """
    mesh = dof_handler.mesh
    quadrature = QuadratureGauss(mesh.ndims, n_gauss)
    basis = BasisLagrange(mesh.ndims, dof_handler.basis.degree, quadrature)
    fe_values = FEValues(basis, mesh.cell_vertices())

    ue = np.zeros(dof_handler.conn.shape)
    uq = np.zeros(fe_values.JxW.shape)
    utils.scatter_node_to_elem(dof_handler.conn, u, ue)
    utils.compute_elem_interp(fe_values.N, ue, uq)
    err = uq - exact(fe_values.Xq)
    return float(np.sqrt(np.sum(fe_values.JxW * err**2)))


class DataOut:
    """
    Sample nodal data and derived quantities on per-cell patches and write
    them to a legacy vtk file
    """

    def __init__(self, dof_handler: DoFHandler):
        if dof_handler.conn is None:
            raise RuntimeError("dofs have not been distributed yet")
        self.dof_handler = dof_handler
        self.data_vectors = []
        self.postprocessed = []
        self.patches = None
        return

    def add_data_vector(self, u, name):
        """
        Inputs:
            u: nodal vector, (n_dofs, )
            name: field name, or a postprocessor providing
                  compute_derived_quantities_scalar() and get_names()
        """
        u = np.asarray(u, dtype=float)
        if u.shape != (self.dof_handler.n_dofs,):
            raise ValueError(
                f"data vector has shape {u.shape}, expected ({self.dof_handler.n_dofs},)"
            )
        if isinstance(name, str):
            self.data_vectors.append((name, u))
        else:
            self.postprocessed.append((name, u))
        self.patches = None
        return

    @staticmethod
    def _patch_cells(n_subdivisions, ndims):
        """
        Sub-cell connectivity within one patch lattice, vtk vertex order
        """
        m = n_subdivisions + 1
        corners = (
            _tensor_index(n_subdivisions, ndims)[:, None, :]
            + _tensor_index(2, ndims)[None, :, :]
        )
        lin = np.zeros(corners.shape[:2], dtype=int)
        for k in range(ndims):
            lin += corners[..., k] * m**k
        return lin[:, VTK_VERTEX_ORDER[ndims]]

    @time_this
    def build_patches(self, n_subdivisions=None):
        """
        Evaluate all data on a lattice of n_subdivisions + 1 points per axis
        in every cell, by default the element degree
        """
        dof_handler = self.dof_handler
        mesh = dof_handler.mesh
        ndims = mesh.ndims
        degree = dof_handler.basis.degree
        if n_subdivisions is None:
            n_subdivisions = degree

        quadrature = QuadraturePatch(ndims, n_subdivisions)
        basis = BasisLagrange(ndims, degree, quadrature)
        fe_values = FEValues(basis, mesh.cell_vertices())
        nelems, npts_per_cell = fe_values.JxW.shape

        X = fe_values.Xq.reshape(-1, ndims)
        local = self._patch_cells(n_subdivisions, ndims)
        conn = (
            np.arange(nelems)[:, None, None] * npts_per_cell + local[None, :, :]
        ).reshape(-1, local.shape[1])

        scalars = {}
        vectors = {}
        ue = np.zeros(dof_handler.conn.shape)
        for name, u in self.data_vectors:
            uq = np.zeros((nelems, npts_per_cell))
            utils.scatter_node_to_elem(dof_handler.conn, u, ue)
            utils.compute_elem_interp(fe_values.N, ue, uq)
            scalars[name] = uq.ravel()

        for postprocessor, u in self.postprocessed:
            utils.scatter_node_to_elem(dof_handler.conn, u, ue)
            uq = np.zeros((nelems, npts_per_cell))
            duq = np.zeros((nelems, npts_per_cell, ndims))
            utils.compute_elem_interp(fe_values.N, ue, uq)
            utils.compute_elem_grad(fe_values.Ngrad, ue, duq)
            derived = postprocessor.compute_derived_quantities_scalar(
                uq.ravel(), duq.reshape(-1, ndims), points=X
            )

            names = postprocessor.get_names()
            interpretation = postprocessor.get_data_component_interpretation()
            i = 0
            while i < len(names):
                if interpretation[i] == "component_is_part_of_vector":
                    j = i
                    while (
                        j < len(names)
                        and names[j] == names[i]
                        and interpretation[j] == "component_is_part_of_vector"
                    ):
                        j += 1
                    vectors[names[i]] = derived[:, i:j]
                    i = j
                else:
                    scalars[names[i]] = derived[:, i]
                    i += 1

        self.patches = {"X": X, "conn": conn, "scalars": scalars, "vectors": vectors}
        return self.patches

    def write_vtk(self, vtk_name, log=print):
        if self.patches is None:
            raise RuntimeError("build_patches() must be called before writing")
        utils.to_vtk(
            self.patches["conn"],
            self.patches["X"],
            nodal_sol=self.patches["scalars"],
            nodal_vec=self.patches["vectors"],
            vtk_name=vtk_name,
            log=log,
        )
        return

    def plot(self, ax, field="solution", **kwargs):
        """
        Create a 2-dimensional contour plot for a scalar field on the patches
        """
        if self.patches is None:
            raise RuntimeError("build_patches() must be called before plotting")
        X = self.patches["X"]
        if X.shape[1] != 2:
            raise ValueError("only 2-dimensional data can be plotted")
        if field not in self.patches["scalars"]:
            raise ValueError(f"unknown scalar field {field}")

        # Split every (counter-clockwise) sub-quad into two triangles
        conn = self.patches["conn"]
        nquads = conn.shape[0]
        triangles = np.zeros((2 * nquads, 3), dtype=int)
        triangles[:nquads, :] = conn[:, [0, 1, 2]]
        triangles[nquads:, :] = conn[:, [0, 2, 3]]

        # Create the triangulation object
        tri_obj = tri.Triangulation(X[:, 0], X[:, 1], triangles)

        # Set the aspect ratio equal
        ax.set_aspect("equal")

        # Create the contour plot
        return ax.tricontourf(tri_obj, self.patches["scalars"][field], **kwargs)


class WallDistanceProblem:
    """
    The wall distance driver: mesh, dofs, assembly, boundary conditions,
    solve and output, run strictly in this order
    """

    STAGES = (
        "Start",
        "MeshBuilt",
        "DOFsDistributed",
        "SystemAllocated",
        "SystemAssembled",
        "BoundaryApplied",
        "Solved",
        "OutputWritten",
        "Done",
    )

    def __init__(
        self,
        ndims=2,
        n_refinements=N_REFINEMENTS,
        degree=FE_DEGREE,
        n_gauss=N_GAUSS,
        tolerance=CG_TOLERANCE,
        max_iterations=CG_MAX_ITERATIONS,
        preconditioner="ssor",
        output_dir=".",
        gfunc: Callable = unit_source,
        boundary_function: Callable = zero_function,
        log=print,
    ):
        if ndims not in (2, 3):
            raise ValueError(f"only 2 and 3 dimensions are supported, got {ndims}")
        if preconditioner not in ("ssor", "amg"):
            raise ValueError(f"unknown preconditioner {preconditioner}")
        self.ndims = ndims
        self.n_refinements = n_refinements
        self.degree = degree
        self.n_gauss = n_gauss
        self.preconditioner = preconditioner
        self.output_dir = output_dir
        self.gfunc = gfunc
        self.boundary_function = boundary_function
        self.log = log
        self.control = SolverControl(max_iterations, tolerance)

        self.stage = "Start"
        self.mesh = None
        self.dof_handler = None
        self.model = None
        self.system_matrix = None
        self.system_rhs = None
        self.solution = None
        self.boundary_values = None
        self.data_out = None
        self.converged = False
        self.n_iterations = None
        return

    def _advance(self, expected, new):
        if self.stage != expected:
            raise RuntimeError(f"cannot enter stage {new} from stage {self.stage}")
        self.stage = new
        return

    def _log(self, msg):
        if self.log is not None:
            self.log(msg)

    @time_this
    def make_grid(self):
        self._advance("Start", "MeshBuilt")
        self.mesh = HyperCubeMesh(self.ndims, -1.0, 1.0)
        self.mesh.refine_global(self.n_refinements)

        self._log(f"   Number of active cells: {self.mesh.n_active_cells}")
        self._log(f"   Total number of cells: {self.mesh.n_cells}")
        return

    @time_this
    def setup_system(self):
        self._advance("MeshBuilt", "DOFsDistributed")
        quadrature = QuadratureGauss(self.ndims, self.n_gauss)
        basis = BasisLagrange(self.ndims, self.degree, quadrature)
        self.dof_handler = DoFHandler(self.mesh)
        self.dof_handler.distribute_dofs(basis)

        self._log(f"   Number of degrees of freedom: {self.dof_handler.n_dofs}")

        self._advance("DOFsDistributed", "SystemAllocated")
        self.model = PoissonModel(self.dof_handler, quadrature, basis, self.gfunc)
        self.system_matrix = self.model.sparsity.make_matrix()
        self.solution = np.zeros(self.dof_handler.n_dofs)
        self.system_rhs = np.zeros(self.dof_handler.n_dofs)
        return

    @time_this
    def assemble_system(self):
        self._advance("SystemAllocated", "SystemAssembled")
        self.model.compute_jacobian(self.system_matrix)
        self.system_rhs[:] = self.model.compute_rhs()

        self._advance("SystemAssembled", "BoundaryApplied")
        self.boundary_values = interpolate_boundary_values(
            self.dof_handler, 0, self.boundary_function
        )
        apply_boundary_values(
            self.boundary_values, self.system_matrix, self.solution, self.system_rhs
        )
        return

    @time_this
    def solve(self):
        self._advance("BoundaryApplied", "Solved")
        if self.preconditioner == "ssor":
            preconditioner = PreconditionSSOR(self.system_matrix, 1.0)
        else:
            preconditioner = PreconditionAMG(self.system_matrix)

        solver = SolverCG(self.control)
        try:
            solver.solve(
                self.system_matrix, self.solution, self.system_rhs, preconditioner
            )
        except SolverNonConvergence as e:
            self.converged = False
            self.n_iterations = e.iterations
            self._log(f"   [Warning] {e}, keeping the last iterate")
            return
        self.converged = True
        self.n_iterations = self.control.last_step
        self._log(
            f"   {self.n_iterations} CG iterations needed to obtain convergence."
        )
        return

    @time_this
    def output_results(self):
        self._advance("Solved", "OutputWritten")
        postprocessor = WallDistancePostprocessor(self.ndims, log=self.log)
        self.data_out = DataOut(self.dof_handler)
        self.data_out.add_data_vector(self.solution, "solution")
        self.data_out.add_data_vector(self.solution, postprocessor)
        self.data_out.build_patches()

        vtk_name = os.path.join(
            self.output_dir, "solution-2d.vtk" if self.ndims == 2 else "solution-3d.vtk"
        )
        self.data_out.write_vtk(vtk_name, log=self.log)
        return vtk_name

    def run(self):
        """
        Run the whole pipeline

        Return:
            vtk_name: path of the written output
        """
        self._log(f"Solving problem in {self.ndims} space dimensions.")
        self.make_grid()
        self.setup_system()
        self.assemble_system()
        self.solve()
        vtk_name = self.output_results()
        self._advance("OutputWritten", "Done")
        return vtk_name
