"""
Adaptive batch sizing

Chooses how many available items go into the next engine run.
"""
from batch_engine.core.errors import ConfigurationError


def choose_batch_size(available: int, minimum: int, maximum: int, optimal: int) -> int:
    """
    Pick the size of the next batch

    Args:
        available: Number of items waiting to be processed
        minimum: Lower bound; smaller backlogs are taken whole
        maximum: Upper bound; larger backlogs are cut to the optimal size
        optimal: Preferred batch size

    Returns:
        available if available <= minimum, optimal if available >= maximum,
        otherwise min(available, optimal)

    Example:
        choose_batch_size(3, 5, 100, 20)    # 3
        choose_batch_size(200, 5, 100, 20)  # 20
        choose_batch_size(50, 5, 100, 20)   # 20
    """
    if min(available, minimum, maximum, optimal) < 0:
        raise ConfigurationError("Batch size bounds must be non-negative")
    if minimum > maximum:
        raise ConfigurationError(f"minimum ({minimum}) must not exceed maximum ({maximum})")

    if available <= minimum:
        return available
    if available >= maximum:
        return optimal
    return min(available, optimal)
