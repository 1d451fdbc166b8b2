"""
Exceptions and warnings raised by the MCC estimation pipeline.
"""

from typing import Optional


class EstimationError(ValueError):
    """
    Fatal condition in the MCC pipeline.

    Parameters
    ----------
    message : str
        Description of the violated condition
    resample : int, optional
        Resample index where the condition was detected
    arm : int, optional
        Treatment arm where the condition was detected
    time : float, optional
        Observed time where the condition was detected
    """

    def __init__(
        self,
        message: str,
        resample: Optional[int] = None,
        arm: Optional[int] = None,
        time: Optional[float] = None,
    ):
        self.resample = resample
        self.arm = arm
        self.time = time

        location = []
        if resample is not None:
            location.append(f'resample={resample}')
        if arm is not None:
            location.append(f'arm={arm}')
        if time is not None:
            location.append(f'time={time:g}')

        if location:
            message = f"{message} ({', '.join(location)})"
        super().__init__(message)


class DegenerateBootstrapWarning(UserWarning):
    """Bootstrap variance computed from a single replicate (divisor B-1 = 0)."""
