r"""
Command-line interface (CLI) for fitting the in-scan intervention (ISI) displacement models to regional PET
Time-Activity Curves (TACs).

This module provides a CLI to interact with the :mod:`petisi.kinetic_modeling.isi_analysis` module. It utilizes
argparse to handle command-line arguments.

The user must provide:
    * Blood file path, with columns: time, arterial input function and whole blood
    * Regional TACs file path: a tab separated table with the frame mid-times in the first column
    * Filename prefix for the output files
    * Output directory where the analysis results will be saved
    * Time of the intervention in minutes
    * Duration of the scan in minutes

User can optionally provide:
    * The solver: 'numerical' (smooth occupancy growth) or 'singlestep' (step change of occupancy)
    * The per-frame weighting scheme
    * Initial guesses, lower and upper bounds for the global parameters (occupancy, VND, event time offset)
    * Initial guesses, lower and upper bounds for the regional parameters (K1, VS, vB)
    * Tolerances and the maximum number of iterations and function evaluations

Example:
    In the proceeding example, we assume that we have a blood file named 'blood.txt' and regional TACs named
    'tacs.tsv', for a scan of 150 minutes where the drug was administered at 60 minutes.

    .. code-block:: bash

        petisi-isi-fit -b "blood.txt"\
        -r "tacs.tsv"\
        -o "./" -p "sub-001"\
        -t 60.0 -d 150.0\
        -s "singlestep" -w "framedur"\
        --print

See Also:
    :mod:`petisi.kinetic_modeling.isi_analysis` - module for fitting the ISI displacement models.

"""

from typing import Union
import argparse
import numpy as np
from ..kinetic_modeling import isi_analysis as pet_isi
from ..kinetic_modeling.isi_fitting import ISIFitParameters

_EXAMPLE_ = ('Fitting regional TACs with the single-step displacement model, for a drug given at 60 minutes:\n\t'
             'petisi-isi-fit -b "blood.txt" '
             '-r "tacs.tsv" '
             '-o "./" -p "sub-001" '
             '-t 60.0 -d 150.0 '
             '-s "singlestep" -w "framedur" '
             '--global-initial-guesses 0.5 2.0 5.0 '
             '--global-lower-bounds 0.0 0.0 0.0 '
             '--global-upper-bounds 1.0 10.0 30.0 '
             '--print')


def _generate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='petisi-isi-fit',
                                     description='Command line interface for fitting the in-scan intervention (ISI) '
                                                 'displacement models to regional PET Time Activity Curves (TACs).',
                                     formatter_class=argparse.RawTextHelpFormatter, epilog=_EXAMPLE_)

    # IO group
    grp_io = parser.add_argument_group('IO Paths and Prefixes')
    grp_io.add_argument("-b", "--blood-data-path", required=True,
                        help="Path to the blood file: time, input function and whole blood columns.")
    grp_io.add_argument("-r", "--roi-tacs-path", required=True,
                        help="Path to the tab separated regional TACs. The first column holds the frame times.")
    grp_io.add_argument("-o", "--output-directory", required=True, help="Path to the output directory.")
    grp_io.add_argument("-p", "--output-filename-prefix", required=True, help="Prefix for the output filenames.")

    # Analysis group
    grp_analysis = parser.add_argument_group('Analysis Parameters')
    grp_analysis.add_argument("-t", "--intervention-time", required=True, type=float,
                              help="Time of the intervention in minutes.")
    grp_analysis.add_argument("-d", "--scan-duration", required=True, type=float,
                              help="Duration of the scan in minutes.")
    grp_analysis.add_argument("-m", "--model", required=False, default='1tcm', choices=['1tcm'],
                              help="Compartment model.")
    grp_analysis.add_argument("-s", "--solver", required=False, default='numerical',
                              choices=['numerical', 'singlestep'],
                              help="'numerical': smooth occupancy growth, integrated with Euler forward.\n"
                                   "'singlestep': occupancy changes in a single step.")
    grp_analysis.add_argument("-w", "--weighting", required=False, default='ones', choices=['ones', 'framedur'],
                              help="Per-frame weighting of the residuals.")
    grp_analysis.add_argument("--global-initial-guesses", required=False, nargs=3, type=float,
                              help="Initial guesses for occupancy, VND and the event time offset.")
    grp_analysis.add_argument("--global-lower-bounds", required=False, nargs=3, type=float,
                              help="Lower bounds for occupancy, VND and the event time offset.")
    grp_analysis.add_argument("--global-upper-bounds", required=False, nargs=3, type=float,
                              help="Upper bounds for occupancy, VND and the event time offset.")
    grp_analysis.add_argument("--region-initial-guesses", required=False, nargs=3, type=float,
                              help="Initial guesses for K1, VS and vB.")
    grp_analysis.add_argument("--region-lower-bounds", required=False, nargs=3, type=float,
                              help="Lower bounds for K1, VS and vB.")
    grp_analysis.add_argument("--region-upper-bounds", required=False, nargs=3, type=float,
                              help="Upper bounds for K1, VS and vB.")
    grp_analysis.add_argument("-f", "--max-fit-iterations", required=False, default=10000, type=int,
                              help="Maximum number of iterations.")
    grp_analysis.add_argument("-n", "--max-func-evals", required=False, default=10000, type=int,
                              help="Maximum number of function evaluations.")
    grp_analysis.add_argument("--tolerance", required=False, default=1.0e-6, type=float,
                              help="Tolerance on the change of the cost function and of the parameters.")

    # Printing arguments
    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument("--print", action="store_true", help="Whether to print the analysis results.")
    grp_verbose.add_argument("--plot", action="store_true", help="Whether to save a plot of the fits.")
    grp_verbose.add_argument("-v", "--verbose", action="store_true", help="Whether to print progress information.")

    return parser


def _generate_args(argv: Union[list, None] = None) -> argparse.Namespace:
    r"""
    Generates and handles the arguments for the command-line interface.

    Args:
        argv (list, optional): Arguments to parse. If None, ``sys.argv`` is used.

    Returns:
        argparse.Namespace: Parsed command-line arguments.

    Raises:
        argparse.ArgumentError: If necessary arguments are missing or invalid arguments are provided.
    """
    return _generate_parser().parse_args(argv)


def _generate_bounds(initial: Union[list, None],
                     lower: Union[list, None],
                     upper: Union[list, None],
                     default_bounds: np.ndarray) -> np.ndarray:
    r"""
    Generates the bounds for one layer of fitting parameters.

    Any of the initial guesses, lower bounds or upper bounds that are not provided are taken from ``default_bounds``.

    Args:
        initial (list, optional): Initial guesses.
        lower (list, optional): Lower bounds.
        upper (list, optional): Upper bounds.
        default_bounds (np.ndarray): Default bounds of shape [n, 3].

    Returns:
        np.ndarray: Array of shape [n, 3], where n is the number of parameters, where column 0 has the initial
        guesses, column 1 has lower bounds, and column 2 has upper bounds.

    Raises:
        ValueError: If any of the provided lists does not have one value per parameter.
    """
    bounds = np.array(default_bounds, dtype=float)
    for col_id, vals in enumerate((initial, lower, upper)):
        if vals is None:
            continue
        if len(vals) != bounds.shape[0]:
            raise ValueError(f"Expected {bounds.shape[0]} values for each of the initial guesses, lower bounds and "
                             f"upper bounds. Got {len(vals)}.")
        bounds[:, col_id] = vals
    return bounds


def _generate_fit_params(args: argparse.Namespace) -> ISIFitParameters:
    default_params = ISIFitParameters()
    global_bounds = _generate_bounds(initial=args.global_initial_guesses,
                                     lower=args.global_lower_bounds,
                                     upper=args.global_upper_bounds,
                                     default_bounds=default_params.global_bounds)
    region_bounds = _generate_bounds(initial=args.region_initial_guesses,
                                     lower=args.region_lower_bounds,
                                     upper=args.region_upper_bounds,
                                     default_bounds=default_params.region_bounds)
    return ISIFitParameters(global_bounds=global_bounds,
                            region_bounds=region_bounds,
                            func_tol=args.tolerance,
                            param_tol=args.tolerance,
                            max_iterations=args.max_fit_iterations,
                            max_func_evals=args.max_func_evals)


def _print_results(analysis_props: dict):
    results = analysis_props['Results']
    title_str = f"{'Param':<16} {'FitVal':>10}|"
    print("-" * len(title_str))
    print(title_str)
    print("-" * len(title_str))
    event_time_label = 'TimeOfEffect' if 'TimeOfEffect' in results else 'TimeOfStep'
    for param_name in ('Occupancy', 'VND', event_time_label):
        print(f"{param_name:<16} {results[param_name]:>10.4f}|")
    print("-" * len(title_str))
    for roi_name, status in results['RegionExitStatus'].items():
        print(f"{roi_name}: {status}")
        for param_name in ('K1', 'VS', 'VT', 'vB'):
            print(f"  {param_name:<14} {results[param_name][roi_name]:>10.4f}|")
    print("-" * len(title_str))
    print(f"ExitStatus: {results['ExitStatus']}")


def main(argv: Union[list, None] = None):
    args = _generate_args(argv)

    settings = pet_isi.ISISettings(model=args.model,
                                   solver=args.solver,
                                   weighting=args.weighting,
                                   fit_params=_generate_fit_params(args),
                                   verbose=args.verbose)

    isi_fitting = pet_isi.FitISIToTACs(blood_data_path=args.blood_data_path,
                                       tacs_path=args.roi_tacs_path,
                                       output_directory=args.output_directory,
                                       output_filename_prefix=args.output_filename_prefix,
                                       intervention_time=args.intervention_time,
                                       scan_duration=args.scan_duration,
                                       settings=settings)
    isi_fitting.run_analysis()
    isi_fitting.save_analysis()
    if args.plot:
        isi_fitting.save_fit_plot()

    if args.print:
        _print_results(isi_fitting.analysis_props)


if __name__ == "__main__":
    main()
