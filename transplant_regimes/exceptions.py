"""
Exceptions and warnings raised by transplant_regimes.
"""


class DataShapeError(ValueError):
    """
    The longitudinal panel violates a structural requirement: missing columns,
    duplicate (id, visit) pairs, visits out of order, or a treatment path that
    leaves the treated state.
    """


class DivisionUndefined(ArithmeticError):
    """
    A weighted mean has a zero denominator, i.e. no subject with positive weight
    complies with the regime.
    """


class ResampleDegenerate(UserWarning):
    """
    Too few defined bootstrap estimates remain for a regime to compute a
    standard deviation.
    """
