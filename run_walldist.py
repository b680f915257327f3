"""
Command line driver: solve the wall distance problem on the unit hyper cube
and write solution-2d.vtk / solution-3d.vtk
"""
import os
import sys
import argparse
import walldist
import fe_utils as utils


def build_parser():
    p = argparse.ArgumentParser(description="Poisson based wall distance estimate")
    p.add_argument("--dim", default=2, type=int, choices=[2, 3])
    p.add_argument("--refinements", default=walldist.N_REFINEMENTS, type=int)
    p.add_argument("--degree", default=walldist.FE_DEGREE, type=int)
    p.add_argument("--n-gauss", default=walldist.N_GAUSS, type=int)
    p.add_argument("--tol", default=walldist.CG_TOLERANCE, type=float)
    p.add_argument("--max-iter", default=walldist.CG_MAX_ITERATIONS, type=int)
    p.add_argument("--preconditioner", default="ssor", choices=["ssor", "amg"])
    p.add_argument("--output-dir", default=".", type=str)
    p.add_argument("--plot", action="store_true", help="save contour plots (2d)")
    p.add_argument("--timer", action="store_true", help="print execution times")
    p.add_argument(
        "--strict", action="store_true", help="exit with 2 if CG does not converge"
    )
    return p


def plot_fields(problem, png_name):
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fields = ["solution", "sMin", "sMax"]
    fig, axs = plt.subplots(
        ncols=len(fields), nrows=1, figsize=(4.0 * len(fields), 3.6), constrained_layout=True
    )
    for ax, field in zip(axs, fields):
        cs = problem.data_out.plot(ax, field=field, levels=50)
        ax.set_title(field)
        fig.colorbar(cs, ax=ax)
    fig.savefig(png_name)
    plt.close(fig)
    return


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.timer:
        utils.timer_on()

    if args.plot and args.dim != 2:
        print("[Error] --plot is only available for --dim 2", file=sys.stderr)
        return 1

    try:
        os.makedirs(args.output_dir, exist_ok=True)
        problem = walldist.WallDistanceProblem(
            ndims=args.dim,
            n_refinements=args.refinements,
            degree=args.degree,
            n_gauss=args.n_gauss,
            tolerance=args.tol,
            max_iterations=args.max_iter,
            preconditioner=args.preconditioner,
            output_dir=args.output_dir,
        )
        problem.run()

        if args.plot:
            png_name = os.path.join(args.output_dir, f"solution-{args.dim}d.png")
            plot_fields(problem, png_name)
            print(f"[Info] Done generating {png_name}")
    except (OSError, ValueError, MemoryError) as e:
        print(f"[Error] {e}", file=sys.stderr)
        return 1

    if args.strict and not problem.converged:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
