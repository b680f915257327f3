import sys
import os
import argparse
import numpy as np
import matplotlib.pyplot as plt

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
import walldist, fe_utils as utils

p = argparse.ArgumentParser()
p.add_argument("--dim", type=int, default=2, choices=[2, 3])
p.add_argument("--refinements", type=int, nargs="+", default=[2, 3, 4])
p.add_argument("--npts", type=int, default=101)
p.add_argument("--timer", action="store_true")
args = p.parse_args()

if args.timer:
    utils.timer_on()

# Sample along the x axis, exact distance to the wall is 1 - |x|
xs = np.linspace(-1.0, 1.0, args.npts)
d_exact = 1.0 - np.abs(xs)

fig, axs = plt.subplots(ncols=2, nrows=1, figsize=(8.0, 3.2), constrained_layout=True)
axs[0].plot(xs, d_exact, color="black", linewidth=1.5, label="exact")

for n_refinements in args.refinements:
    problem = walldist.WallDistanceProblem(
        ndims=args.dim, n_refinements=n_refinements, log=None
    )
    problem.make_grid()
    problem.setup_system()
    problem.assemble_system()
    problem.solve()

    postprocessor = walldist.WallDistancePostprocessor(args.dim)
    pts = np.zeros((args.npts, args.dim))
    pts[:, 0] = xs
    uh = np.array(
        [walldist.point_value(problem.dof_handler, problem.solution, x) for x in pts]
    )
    duh = np.array(
        [walldist.point_gradient(problem.dof_handler, problem.solution, x) for x in pts]
    )
    s = postprocessor.compute_derived_quantities_scalar(uh, duh)
    s_min = s[:, args.dim]
    s_max = s[:, args.dim + 1]

    print(
        f"refinements: {n_refinements:2d}, ndof: {problem.dof_handler.n_dofs:6d}, "
        f"CG iterations: {problem.n_iterations:4d}, "
        f"max |sMin - d|: {np.abs(s_min - d_exact).max():.3e}"
    )

    h = problem.mesh.cell_size[0, 0]
    axs[0].plot(xs, s_min, linewidth=1.0, label=f"sMin, h = {h:g}")
    axs[1].plot(xs, s_max, linewidth=1.0, label=f"sMax, h = {h:g}")

axs[0].set_xlabel("x")
axs[0].set_ylabel("distance")
axs[1].set_xlabel("x")
for ax in axs:
    ax.legend()
    ax.grid(which="major")

fig.savefig(f"wall_distance_profile_{args.dim}d.pdf")
