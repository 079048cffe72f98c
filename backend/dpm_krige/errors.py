"""Exceptions raised by the DPM kriging pipeline."""


class DPMKrigeError(Exception):
    """Base class for pipeline failures."""


class InputFormatError(DPMKrigeError, ValueError):
    """A MOVES output file has a malformed data row."""

    def __init__(self, path, line_no: int, reason: str):
        self.path = path
        self.line_no = line_no
        self.reason = reason
        super().__init__(f"{path}: line {line_no}: {reason}")


class VariogramFitError(DPMKrigeError):
    """The variogram model could not be fit to the samples."""


class SingularSystemError(DPMKrigeError):
    """The kriging system has no unique solution (usually duplicate locations)."""


class GridMismatchError(DPMKrigeError, ValueError):
    """Two surfaces that must be co-registered are on different grids."""
