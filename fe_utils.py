"""
Utility functions for profiling, data scattering, coordinate transformation
and legacy vtk export.
"""
from time import perf_counter_ns
import numpy as np


def time_this(func):
    """
    Decorator: time the execution of a function, only reports when the timer
    is switched on by timer_on()
    """
    tab = "    "
    time_this.counter = 0  # a "static" variable
    fun_name = func.__qualname__

    def wrapper(*args, **kwargs):
        if not time_this.enabled:
            return func(*args, **kwargs)
        info_str = f"{tab*time_this.counter}{fun_name}() called"
        print(f"[timer] {info_str:<40s}")
        time_this.counter += 1
        t0 = perf_counter_ns()
        try:
            ret = func(*args, **kwargs)
        finally:
            time_this.counter -= 1
        t1 = perf_counter_ns()
        info_str = f"{tab*time_this.counter}{fun_name}() return"
        print(
            f"[timer] {info_str:<80s}",
            f"({(t1 - t0) / 1e6:.2f} ms)",
        )
        return ret

    wrapper.__doc__ = func.__doc__
    wrapper.__name__ = func.__name__
    wrapper.__qualname__ = fun_name
    return wrapper


time_this.enabled = False
time_this.counter = 0


def timer_on():
    time_this.enabled = True
    return


def timer_off():
    time_this.enabled = False
    return


@time_this
def scatter_node_to_elem(conn, data, data_e):
    """
    Scatter (scalar or vector) nodal quantities to elements: data -> data_e

    Inputs:
        conn: connectivity, (nelems, nnodes_per_elem)
        data: nodal data, (nnodes, ) or (nnodes, N)

    Outputs:
        data_e: element-wise data, (nelems, nnodes_per_elem) or (nelems,
                nnodes_per_elem, N)
    """
    data_e[...] = data[conn]
    return


@time_this
def compute_jtrans(Xe, Nderiv, Jq):
    """
    Compute the Jacobian transformation

    Inputs:
        Xe: element nodal location, (nelems, nnodes_per_elem, ndims)
        Nderiv: derivative of basis w.r.t. local coordinate, (nquads,
                nnodes_per_elem, ndims)

    Outputs:
        Jq: Jacobian matrix on quadrature, (nelems, nquads, ndims, ndims)
    """
    Jq[:, :, :, :] = np.einsum("qlk, ilj -> iqjk", Nderiv, Xe)
    return


@time_this
def compute_jdet(Jq, detJq):
    """
    Compute the determinant given Jacobian.

    Inputs:
        Jq: Jacobian matrix on quadrature, (nelems, nquads, ndims, ndims)

    Outputs:
        detJq: Jacobian determinant on quadrature, (nelems, nquads)
    """
    detJq[:, :] = np.linalg.det(Jq)
    return


@time_this
def compute_elem_interp(N, data_e, data_q):
    """
    Interpolate the (scalar or vector) quantities from node to quadrature point
    data_e -> data_q

    Inputs:
        N: basis values, (nquads, nnodes_per_elem)
        data_e: element data, (nelems, nnodes_per_elem) or (nelems,
                nnodes_per_elem, N)

    Outputs:
        data_q: quadrature data, (nelems, nquads) or (nelems, nquads, N)
    """
    if len(data_e.shape) == 2:
        data_q[:, :] = np.einsum("jl, il -> ij", N, data_e)
    else:
        data_q[:, :, :] = np.einsum("jl, ilk -> ijk", N, data_e)
    return


@time_this
def compute_elem_grad(Ngrad, data_e, grad_q):
    """
    Evaluate the physical gradient of a scalar field at quadrature points

    Inputs:
        Ngrad: shape function gradient, (nelems, nquads, nnodes_per_elem,
               ndims)
        data_e: element data, (nelems, nnodes_per_elem)

    Outputs:
        grad_q: gradient on quadrature, (nelems, nquads, ndims)
    """
    grad_q[:, :, :] = np.einsum("iqlk, il -> iqk", Ngrad, data_e)
    return


@time_this
def compute_basis_grad(Jq, detJq, Nderiv, invJq, Ngrad):
    """
    Compute the derivatives of basis function with respect to global
    coordinates on quadratures

    Inputs:
        Jq: Jacobian transformation on quadrature, (nelems, nquads, ndims,
            ndims)
        detJq: the determinant of the Jacobian matrices, (nelems, nquads)
        Nderiv: shape function derivatives, (nquads, nnodes_per_elem, ndims)

    Outputs:
        invJq: Jacobian inverse, by-product, (nelems, nquads, ndims, ndims)
        Ngrad: shape function gradient, (nelems, nquads, nnodes_per_elem,
                ndims)
    """
    # Compute Jacobian inverse
    ndims = Jq.shape[-1]
    if ndims == 2:
        invJq[..., 0, 0] = Jq[..., 1, 1] / detJq
        invJq[..., 0, 1] = -Jq[..., 0, 1] / detJq
        invJq[..., 1, 0] = -Jq[..., 1, 0] / detJq
        invJq[..., 1, 1] = Jq[..., 0, 0] / detJq
    elif ndims == 3:
        invJq[...] = np.linalg.inv(Jq)
    else:
        raise NotImplementedError
    Ngrad[:, :, :, :] = np.einsum("jkm, ijml -> ijkl", Nderiv, invJq)
    return


ELEMENT_INFO = {
    "quad": {
        "nnode": 4,
        "vtk_type": 9,
        "note": "2d quadrilateral element",
    },
    "block": {
        "nnode": 8,
        "vtk_type": 12,
        "note": "3d block element",
    },
}


def _fmt(vals):
    return " ".join(f"{v:.17g}" for v in vals)


@time_this
def to_vtk(
    conn,
    X,
    nodal_sol={},
    nodal_vec={},
    vtk_name="problem.vtk",
    title="walldist output",
    log=print,
):
    """
    Generate a legacy ASCII vtk given conn, X, and optionally nodal data

    Inputs:
        conn: ndarray or dictionary {etype: ndarray} if a mixed mesh is used,
              vtk vertex ordering is expected
        X: nodal locations, (nnodes, 2) or (nnodes, 3)
        nodal_sol: nodal scalars, dictionary with the following structure:

                    nodal_sol = {
                        "scalar1": [...],
                        "scalar2": [...],
                        ...
                    }

        nodal_vec: nodal vectors, {"name": (nnodes, ndims) array}, 2d vectors
                   are padded with a zero z-component
        vtk_name: name of the vtk
        title: header line of the file
        log: sink for the completion message, None to stay quiet
    """
    if isinstance(conn, np.ndarray):
        if conn.shape[1] == 4:
            conn = {"quad": conn}
        elif conn.shape[1] == 8:
            conn = {"block": conn}
        else:
            raise ValueError(f"unsupported connectivity shape {conn.shape}")

    # vtk requires a 3-dimensional data point
    X = np.asarray(X, dtype=float)
    if X.shape[1] == 2:
        X = np.append(X, np.zeros((X.shape[0], 1)), axis=1)

    nnodes = X.shape[0]
    nelems = np.sum([len(c) for c in conn.values()])

    for name, data in nodal_sol.items():
        if len(data) != nnodes:
            raise ValueError(f"field {name} has {len(data)} values, expected {nnodes}")
    for name, data in nodal_vec.items():
        if len(data) != nnodes:
            raise ValueError(f"field {name} has {len(data)} values, expected {nnodes}")

    # Create a empty vtk file and write headers
    with open(vtk_name, "w") as fh:
        fh.write("# vtk DataFile Version 3.0\n")
        fh.write(f"{title}\n")
        fh.write("ASCII\n")
        fh.write("DATASET UNSTRUCTURED_GRID\n")

        # Write nodal points
        fh.write("POINTS {:d} double\n".format(nnodes))
        for x in X:
            fh.write(f"{_fmt(x)}\n")

        # Write connectivity
        size = np.sum(
            [
                len(econn) * (1 + ELEMENT_INFO[etype]["nnode"])
                for etype, econn in conn.items()
            ]
        )
        fh.write(f"CELLS {nelems} {size}\n")
        for etype, econn in conn.items():
            npts = ELEMENT_INFO[etype]["nnode"]
            for c in econn:
                node_idx = " ".join(str(n) for n in c)
                fh.write(f"{npts} {node_idx}\n")

        # Write cell type
        fh.write(f"CELL_TYPES {nelems}\n")
        for etype, econn in conn.items():
            vtk_type = ELEMENT_INFO[etype]["vtk_type"]
            for c in econn:
                fh.write(f"{vtk_type}\n")

        # Write solution
        if nodal_sol or nodal_vec:
            fh.write(f"POINT_DATA {nnodes}\n")
            for name, data in nodal_sol.items():
                fh.write(f"SCALARS {name} double 1\n")
                fh.write("LOOKUP_TABLE default\n")
                for val in data:
                    fh.write(f"{val:.17g}\n")
            for name, data in nodal_vec.items():
                data = np.asarray(data, dtype=float)
                if data.shape[1] == 2:
                    data = np.append(data, np.zeros((data.shape[0], 1)), axis=1)
                fh.write(f"VECTORS {name} double\n")
                for v in data:
                    fh.write(f"{_fmt(v)}\n")

    if log is not None:
        log(f"[Info] Done generating {vtk_name}")
    return
