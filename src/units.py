"""
Unit tables and conversion factors.

All measurements are taken in metres (projected coordinates) and scaled to
the requested output unit by a single multiplicative factor.
"""

from typing import Dict

# Factors convert FROM the base unit (m or m^2) TO the named unit
LENGTH_UNITS: Dict[str, float] = {
    'm': 1.0,
    'km': 1e-3,
    'ft': 1.0 / 0.3048,
    'mi': 1.0 / 1609.344,
}

AREA_UNITS: Dict[str, float] = {
    'm^2': 1.0,
    'km^2': 1e-6,
    'ha': 1e-4,
    'ft^2': 1.0 / (0.3048 ** 2),
    'mi^2': 1.0 / (1609.344 ** 2),
    'acre': 1.0 / 4046.8564224,
}

ANGLE_UNITS: Dict[str, float] = {
    'degrees': 1.0,
}

# Common spellings accepted on input
_ALIASES: Dict[str, str] = {
    'm2': 'm^2',
    'sq m': 'm^2',
    'km2': 'km^2',
    'ft2': 'ft^2',
    'mi2': 'mi^2',
    'meters': 'm',
    'metres': 'm',
    'feet': 'ft',
    'miles': 'mi',
    'hectares': 'ha',
    'acres': 'acre',
    'degree': 'degrees',
    'deg': 'degrees',
}


def normalize_unit(unit: str) -> str:
    """Return the canonical spelling of a unit name."""
    key = str(unit).strip()
    return _ALIASES.get(key.lower(), key)


def length_factor(unit: str) -> float:
    """
    Factor converting metres to ``unit``.

    Raises:
        ValueError: If the unit is not a known length unit.
    """
    unit = normalize_unit(unit)
    if unit not in LENGTH_UNITS:
        raise ValueError(
            f"Unknown length unit '{unit}'. Use one of {sorted(LENGTH_UNITS)}."
        )
    return LENGTH_UNITS[unit]


def area_factor(unit: str) -> float:
    """
    Factor converting square metres to ``unit``.

    Raises:
        ValueError: If the unit is not a known area unit.
    """
    unit = normalize_unit(unit)
    if unit not in AREA_UNITS:
        raise ValueError(
            f"Unknown area unit '{unit}'. Use one of {sorted(AREA_UNITS)}."
        )
    return AREA_UNITS[unit]
