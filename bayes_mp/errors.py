"""
Failure kinds for recursive estimation.

Numerical failures (a belief leaving its parameter domain, a solver running
out of iterations) are kept apart from malformed input, which is always
rejected before any update is attempted.
"""


class BayesMPError(Exception):
    pass


class NumericalFailure(BayesMPError):
    pass


class InvalidBeliefError(NumericalFailure, ValueError):
    """
    A belief parameter is outside the domain of its family,
    e.g. a negative variance or a non-finite rate.
    """
    pass


class NonConvergenceError(NumericalFailure):
    """
    The solver exhausted its iteration budget.
    `result` is the last approximate step result, still usable.
    """
    def __init__(self, message, result=None, step=None):
        super().__init__(message)
        self.result = result
        self.step = step


class MalformedInputError(BayesMPError, ValueError):
    pass


class DimensionMismatchError(MalformedInputError):
    pass


class NonConvergenceWarning(UserWarning):
    pass
