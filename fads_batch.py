"""
Command-line batch processor for factor analysis of dynamic structures (FADS).

This script runs the factor analysis on a single dynamic (4D) NIfTI series.

Key functionalities:
-   Parses command-line arguments for the input series, frame timing,
    the number of factors, iteration budget, stopping tolerance, blood curve
    constraints and output settings.
-   Loads the series with `fads.io`, taking frame timing from a timing file,
    an explicit frame duration, or the NIfTI header.
-   With `--svd`, prints the singular values of the voxel-by-frame matrix as
    an estimate of how many factors the data supports, and exits.
-   Otherwise runs the penalized least squares factor analysis, saves one
    coefficient image per factor as NIfTI, and writes the factor curve report.

Example Usage:
python fads_batch.py \
    --data /path/to/dynamic_series.nii.gz \
    --factors 3 --iterations 500 --tolerance 0.01 \
    --blood 0 0.0 --blood 5 120.0 \
    --out_dir /path/to/output_results
"""
import argparse
import logging
import os
import sys

from fads import io
from fads import pls
from fads import reporting
from fads.svd import svd_factors

DEFAULT_REPORT_NAME = "fads_analysis.tsv"


class ProgressPrinter:
    """Progress callback printing the analysis progress in 10% steps."""

    def __init__(self, step: float = 0.1):
        self.step = step
        self.next_report = step

    def __call__(self, message, fraction: float) -> bool:
        if message is not None:
            print(f"  {message}")
        elif fraction > 1.0:
            print("  Minimization finished.")
        elif fraction >= self.next_report:
            print(f"  Progress: {100.0 * fraction:.0f}% of iteration budget")
            while self.next_report <= fraction:
                self.next_report += self.step
        return True


def parse_blood_curve_constraints(pairs) -> list[tuple[int, float]]:
    """Converts --blood FRAME VALUE string pairs to (int, float) tuples."""
    constraints = []
    for frame_str, value_str in pairs or []:
        try:
            constraints.append((int(frame_str), float(value_str)))
        except ValueError:
            raise ValueError(
                f"Invalid blood curve constraint '{frame_str} {value_str}': expected an integer frame and a numeric value."
            )
    return constraints


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FADS Batch Processor - Single Dynamic Dataset")

    # Input
    parser.add_argument("--data", required=True, help="Path to the 4D dynamic NIfTI file.")
    timing_group = parser.add_mutually_exclusive_group()
    timing_group.add_argument("--frame_duration", type=float, help="Duration of every frame in seconds. Defaults to the NIfTI header's pixdim[4].")
    timing_group.add_argument("--frame_times", help="Path to a frame timing file (CSV or TXT with two columns: start time, duration; in seconds).")
    parser.add_argument("--modality", default="Other", help="Modality label attached to the factor images (e.g. PET, MRI). Default is 'Other'.")

    # Analysis
    parser.add_argument("--svd", action="store_true", help="Only print the singular values of the data (factor strengths) and exit.")
    parser.add_argument("--factors", type=int, help="Number of factors to extract (1 <= factors <= number of frames).")
    parser.add_argument("--iterations", type=int, default=pls.DEFAULT_NUM_ITERATIONS, help=f"Maximum number of iterations. Default is {pls.DEFAULT_NUM_ITERATIONS}.")
    parser.add_argument("--tolerance", type=float, default=pls.DEFAULT_STOPPING_CRITERIA, help=f"Gradient norm stopping criteria. Default is {pls.DEFAULT_STOPPING_CRITERIA}.")
    parser.add_argument("--blood", action="append", nargs=2, metavar=("FRAME", "VALUE"),
                        help="Constrain the blood curve (factor 1) to VALUE at FRAME (0-based). Can be used multiple times.")

    # Output
    parser.add_argument("--out_dir", help="Output directory for the factor images and the report (required unless --svd).")
    parser.add_argument("--report", help=f"Path of the factor curve report. Defaults to <out_dir>/{DEFAULT_REPORT_NAME}.")
    parser.add_argument("--verbose", action="store_true", help="Log every iteration of the minimization.")
    return parser


def main(argv=None):
    """
    Main function for the batch processing script.

    Parses command-line arguments, loads the dynamic series, and either
    prints its singular values or runs the factor analysis and saves its
    results.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.svd:
        if args.factors is None:
            parser.error("the following arguments are required without --svd: --factors")
        if args.out_dir is None:
            parser.error("the following arguments are required without --svd: --out_dir")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(name)s: %(message)s",
    )

    # --- Print Summary of Inputs ---
    print("--- FADS Batch Processor Configuration ---")
    print(f"  Data File: {args.data}")
    if args.frame_times:
        print(f"  Frame Timing: File - {args.frame_times}")
    elif args.frame_duration is not None:
        print(f"  Frame Timing: {args.frame_duration} s per frame")
    else:
        print("  Frame Timing: from NIfTI header")
    if args.svd:
        print("  Mode: singular value decomposition only")
    else:
        print(f"  Method: {pls.FADS_METHODS[pls.FADS_PLS]['name']}")
        print(f"  Factors: {args.factors}, Iterations: {args.iterations}, Tolerance: {args.tolerance}")
        print(f"  Blood Curve Constraints: {args.blood if args.blood else 'None'}")
        print(f"  Output Directory: {args.out_dir}")
    print("-------------------------------------------")

    try:
        blood_curve_constraints = parse_blood_curve_constraints(args.blood)
    except ValueError as val_error:
        print(f"Fatal Error: {val_error}")
        sys.exit(1)

    # --- Ensure Output Directory Exists ---
    if not args.svd:
        try:
            os.makedirs(args.out_dir, exist_ok=True)
            print(f"Output directory '{args.out_dir}' ensured.")
        except OSError as e:
            print(f"Fatal Error: Error creating output directory '{args.out_dir}'. Reason: {e}")
            sys.exit(1)

    # --- 1. Load Input Data ---
    try:
        print("Step 1: Loading input data...")
        frame_times = io.load_frame_times(args.frame_times) if args.frame_times else None
        data_set = io.load_dynamic_series(
            args.data, frame_duration=args.frame_duration,
            frame_times=frame_times, modality=args.modality,
        )
        print(f"  Dynamic data loaded successfully. Shape: {data_set.dim}")
    except FileNotFoundError as fnf_error:
        print(f"Fatal Error: Input file not found. {fnf_error}")
        sys.exit(1)
    except ValueError as val_error:
        print(f"Fatal Error: Invalid input file or frame timing. {val_error}")
        sys.exit(1)

    # --- 2. Singular Value Decomposition ---
    if args.svd:
        print("Step 2: Computing singular values...")
        svd_result = svd_factors(data_set)
        if svd_result is None:
            print("Fatal Error: Singular value decomposition failed. See warnings above.")
            sys.exit(1)
        print(f"  Factor strengths ({svd_result.count} frames, up to {svd_result.count} factors):")
        for i, value in enumerate(svd_result.factors):
            print(f"    {i + 1}\t{value:g}")
        print("--- Batch processing completed successfully! ---")
        return

    # --- 2. Factor Analysis ---
    report_path = args.report or os.path.join(args.out_dir, DEFAULT_REPORT_NAME)
    print("Step 2: Performing factor analysis...")
    result = pls.fads_pls(
        data_set, args.factors,
        num_iterations=args.iterations,
        stopping_criteria=args.tolerance,
        output_filename=report_path,
        blood_curve_constraints=blood_curve_constraints,
        progress=ProgressPrinter(),
    )
    if result is None:
        print("Fatal Error: Factor analysis could not be performed. See warnings above.")
        sys.exit(1)
    if result.converged:
        print(f"  Minimum found after {result.iterations} iterations.")
    else:
        print(f"  No minimum after {result.iterations} iterations: {result.reason}")

    # --- 3. Save Factor Images ---
    try:
        print("Step 3: Saving factor images...")
        for path in reporting.save_factor_images(result.images, args.out_dir):
            print(f"  Saved {path}")
    except IOError as e:
        print(f"Error saving factor images: {e}")
        sys.exit(1)

    if result.report_path is None:
        print(f"Error: Factor curve report could not be written to {report_path}.")
        sys.exit(1)
    print(f"  Factor curve report written to {result.report_path}")

    print("--- Batch processing completed successfully! ---")


if __name__ == "__main__":
    main()
