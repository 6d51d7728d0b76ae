"""Custom warning classes for the continuous_time_ha package.

These warning classes allow users to programmatically filter, suppress,
or capture warnings using Python's standard ``warnings`` module.

Example:
    Silence round-off clipping notices during a calibration sweep::

        import warnings
        from continuous_time_ha._warnings import DataQualityWarning

        warnings.filterwarnings("ignore", category=DataQualityWarning)
"""


class ContinuousTimeHAWarning(UserWarning):
    """Base class for all continuous_time_ha warnings."""


class ConfigurationWarning(ContinuousTimeHAWarning):
    """Unusual but admissible model or solver settings.

    Raised when, for example, the return-risk volatility is positive on a
    grid whose risky asset has no interior points.
    """


class DataQualityWarning(ContinuousTimeHAWarning):
    """Runtime numerical observations.

    Raised when a solver output needed a cosmetic repair, such as clipping
    round-off negative masses from a directly solved distribution.
    """
