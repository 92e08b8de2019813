"""Input validation utilities for the factor analysis routines.

These checks run before any working memory is allocated for an analysis so
that invalid requests are rejected without side effects. Each function raises
`FadsInputError` (a `ValueError`) describing the first problem found.
"""


class FadsInputError(ValueError):
    """Raised when a factor analysis request fails a precondition."""


def validate_dynamic(data_set):
    """Ensures the data set has more than one frame."""
    if data_set.num_frames < 2:
        raise FadsInputError("need dynamic data set in order to perform factor analysis")


def validate_num_factors(num_factors: int, num_frames: int):
    """Ensures 1 <= num_factors <= num_frames."""
    if num_factors < 1:
        raise FadsInputError(f"number of factors must be at least 1, got {num_factors}")
    if num_factors > num_frames:
        raise FadsInputError(
            f"number of factors ({num_factors}) cannot exceed the number of frames ({num_frames})"
        )


def validate_num_iterations(num_iterations: int):
    if num_iterations < 1:
        raise FadsInputError(f"number of iterations must be at least 1, got {num_iterations}")


def validate_blood_curve_constraints(constraints, num_frames: int) -> list[tuple[int, float]]:
    """
    Checks blood curve constraints and returns them as (frame, value) tuples.

    Args:
        constraints (iterable): (frame_index, target_value) pairs.
        num_frames (int): Number of frames in the data set.

    Returns:
        list[tuple[int, float]]: The normalized constraints.

    Raises:
        FadsInputError: If a pair is malformed or a frame index is outside [0, num_frames).
    """
    normalized = []
    for constraint in constraints:
        try:
            frame, value = constraint
            frame_index = int(frame)
            target = float(value)
        except (TypeError, ValueError):
            raise FadsInputError(f"invalid blood curve constraint: {constraint!r}")
        if frame_index != frame:
            raise FadsInputError(f"blood curve constraint frame must be an integer, got {frame!r}")
        if not 0 <= frame_index < num_frames:
            raise FadsInputError(
                f"blood curve constraint frame {frame_index} is outside the data set (0-{num_frames - 1})"
            )
        normalized.append((frame_index, target))
    return normalized
